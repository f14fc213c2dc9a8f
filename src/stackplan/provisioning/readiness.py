"""
ReadinessGate: Blocks dependents until a resource is actually usable.

A provider may acknowledge a create long before the resource's effects are
usable (a control plane whose endpoint does not yet authenticate, a
chart-installed controller whose webhook is not yet reachable). The gate
resolves a resource's readiness policy to Ready or TimedOut.
"""
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .descriptor import FixedDelay, PollUntil, ReadinessPolicy
from .errors import ConfigurationError
from .provider import ProbeLike, invoke_probe

logger = logging.getLogger(__name__)


class ReadinessStatus(Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass
class ReadinessOutcome:
    """Result of waiting on a readiness policy."""
    status: ReadinessStatus
    elapsed: float = 0.0
    probes: int = 0
    last_probe_result: Optional[bool] = None
    last_error: Optional[BaseException] = None
    timeout: Optional[float] = None

    @property
    def ready(self) -> bool:
        return self.status is ReadinessStatus.READY


class ReadinessGate:
    """
    Resolves readiness policies.

    Only the calling task is suspended while waiting; unrelated branches of
    the plan keep running.
    """

    def __init__(
        self,
        probe: Optional[ProbeLike] = None,
        default_timeout: float = 600.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the gate.

        Args:
            probe: Probe used by PollUntil policies that do not carry their own
            default_timeout: Timeout for PollUntil policies without one
            sleep: Coroutine used to wait between probes
            clock: Monotonic clock used to measure elapsed time
        """
        self.probe = probe
        self.default_timeout = default_timeout
        self._sleep = sleep
        self._clock = clock

    async def await_ready(
        self,
        name: str,
        resource_type: str,
        identifiers: Dict[str, Any],
        policy: Optional[ReadinessPolicy],
        timeout: Optional[float] = None,
    ) -> ReadinessOutcome:
        """
        Wait until the resource is ready according to ``policy``.

        ``timeout`` overrides the policy's own timeout.
        """
        if policy is None:
            return ReadinessOutcome(status=ReadinessStatus.READY)

        if isinstance(policy, FixedDelay):
            logger.info(f"[GATE] {name}: waiting fixed delay of {policy.duration:.2f}s")
            start = self._clock()
            await self._sleep(policy.duration)
            return ReadinessOutcome(status=ReadinessStatus.READY, elapsed=self._clock() - start)

        if isinstance(policy, PollUntil):
            return await self._poll(name, resource_type, identifiers, policy, timeout)

        raise ConfigurationError(f"Unsupported readiness policy for {name!r}: {policy!r}")

    async def _poll(
        self,
        name: str,
        resource_type: str,
        identifiers: Dict[str, Any],
        policy: PollUntil,
        timeout: Optional[float],
    ) -> ReadinessOutcome:
        probe = policy.probe if policy.probe is not None else self.probe
        if probe is None:
            raise ConfigurationError(
                f"Resource {name!r} uses PollUntil but no readiness probe is configured"
            )

        limit = timeout or policy.timeout or self.default_timeout
        logger.info(
            f"[GATE] {name}: polling readiness every {policy.interval:.2f}s "
            f"(timeout {limit:.2f}s)"
        )

        start = self._clock()
        probes = 0
        last_result: Optional[bool] = None
        last_error: Optional[BaseException] = None

        while True:
            probes += 1
            try:
                last_result = await invoke_probe(probe, resource_type, identifiers)
                last_error = None
            except Exception as e:
                # An endpoint that is still coming up often refuses connections.
                last_error = e
                logger.warning(f"[GATE] {name}: probe {probes} raised {e!r}; treating as not ready")

            elapsed = self._clock() - start
            if last_result and last_error is None:
                logger.info(f"[GATE] {name}: ready after {elapsed:.2f}s ({probes} probes)")
                return ReadinessOutcome(
                    status=ReadinessStatus.READY,
                    elapsed=elapsed,
                    probes=probes,
                    last_probe_result=True,
                    timeout=limit,
                )

            remaining = limit - elapsed
            if remaining <= 0:
                logger.error(
                    f"[GATE] {name}: not ready after {elapsed:.2f}s "
                    f"({probes} probes, last result {last_result})"
                )
                return ReadinessOutcome(
                    status=ReadinessStatus.TIMED_OUT,
                    elapsed=elapsed,
                    probes=probes,
                    last_probe_result=last_result,
                    last_error=last_error,
                    timeout=limit,
                )

            logger.debug(f"[GATE] {name}: not ready yet, next probe in {min(policy.interval, remaining):.2f}s")
            await self._sleep(min(policy.interval, remaining))
