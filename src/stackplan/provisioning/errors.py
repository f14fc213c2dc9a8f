"""
Error taxonomy for the provisioning core.

Declaration errors are raised before any provider call is made. Provider and
readiness failures are reported per resource on the execution records rather
than raised out of the executor.
"""
from __future__ import annotations
from typing import List, Optional


class ProvisioningError(Exception):
    """Base class for all provisioning errors."""
    pass


# ---- Declarations ---------------------------------------------------------------

class DeclarationError(ProvisioningError):
    """Raised when the declared resource set is invalid. Zero side effects."""
    pass


class DuplicateDeclaration(DeclarationError):
    """Two descriptors claim the same logical name with conflicting types."""

    def __init__(self, name: str, existing_type: str, new_type: str):
        self.name = name
        self.existing_type = existing_type
        self.new_type = new_type
        super().__init__(
            f"Resource {name!r} already declared as {existing_type!r}, "
            f"cannot redeclare as {new_type!r}"
        )


class UnresolvedReference(DeclarationError):
    """A dependency target does not exist in the descriptor set."""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"Resource {source!r} depends on undeclared resource {target!r}")


class CycleDetected(DeclarationError):
    """The dependency graph contains a cycle."""

    def __init__(self, path: List[str]):
        self.path = list(path)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.path)}")


# ---- Planning -------------------------------------------------------------------

class InvalidTransition(ProvisioningError):
    """A resource would need both Create and Destroy semantics in one pass."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid transition for {name!r}: {reason}")


# ---- Provider / execution -------------------------------------------------------

class TransientProviderError(ProvisioningError):
    """
    Raised by providers for failures that are safe to retry
    (rate limiting, throttling, temporary unavailability).
    """
    pass


class OperationFailure(ProvisioningError):
    """Terminal failure of a single resource operation."""

    def __init__(self, name: str, message: str, cause: Optional[BaseException] = None):
        self.name = name
        self.cause = cause
        super().__init__(f"[{name}] {message}")


class ReadinessTimeout(OperationFailure):
    """The readiness gate timed out before the resource became usable."""

    def __init__(self, name: str, timeout: float, last_probe_result: Optional[bool] = None):
        self.timeout = timeout
        self.last_probe_result = last_probe_result
        super().__init__(
            name,
            f"not ready after {timeout:.2f}s (last probe result: {last_probe_result})",
        )


class ExecutionError(ProvisioningError):
    """Raised when the scheduler itself cannot make progress."""
    pass


class ConfigurationError(ProvisioningError):
    """Raised when engine configuration is invalid."""
    pass
