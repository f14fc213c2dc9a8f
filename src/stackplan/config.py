from __future__ import annotations
import os
from typing import Optional
from pydantic import BaseModel, field_validator, model_validator

# ---- Engine-wide tunables; every field can come from a STACKPLAN_* env var ----
_ENV_PREFIX = "STACKPLAN_"


class EngineConfig(BaseModel):
    """
    Tunables for one provisioning engine.

    operation_timeout bounds a single provider call; readiness_timeout bounds
    a PollUntil wait that does not carry its own timeout. They are independent.
    """
    max_parallelism: int = 8
    max_attempts: int = 4
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    operation_timeout: Optional[float] = 900.0
    readiness_timeout: float = 600.0
    enable_tracing: bool = True

    @field_validator("max_parallelism", "max_attempts")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("backoff_base", "backoff_max")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"must be >= 0, got {v}")
        return v

    @field_validator("operation_timeout", mode="before")
    @classmethod
    def _zero_means_unbounded(cls, v):
        # "0" or "none" in the environment disables the per-call timeout
        if v is None:
            return v
        if isinstance(v, str) and v.strip().lower() in {"", "0", "none", "off"}:
            return None
        if float(v) <= 0:
            return None
        return v

    @field_validator("readiness_timeout")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be > 0, got {v}")
        return v

    @model_validator(mode="after")
    def _backoff_ordering(self):
        if self.backoff_max < self.backoff_base:
            self.backoff_max = self.backoff_base
        return self

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff before retry number ``attempt`` (1-based)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    @classmethod
    def from_env(cls, **overrides) -> "EngineConfig":
        """
        Build a config from STACKPLAN_* environment variables.

        Example: STACKPLAN_MAX_PARALLELISM=4 STACKPLAN_READINESS_TIMEOUT=120
        """
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(_ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        values.update(overrides)
        return cls(**values)
