"""Runtime configuration for the evaluator and meshing pipeline."""

from __future__ import annotations

import os
from collections.abc import Iterator, Mapping
from contextlib import contextmanager

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shapefield.errors import InvalidArgumentError
from shapefield.warning_policy import WarningPolicy

_ENV_PREFIX = "SHAPEFIELD_"
_ENV_FIELDS = ("strict_contexts", "max_workers", "max_grid_samples", "eval_chunk_size")


class RuntimeConfig(BaseModel):
    """Process-wide settings.

    ``strict_contexts`` selects how lifetime-context misuse is handled: strict
    raises ``ContextDisciplineError``, lenient emits ``W01`` and ignores the call.
    It follows ``__debug__`` by default, so ``python -O`` runs lenient.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    strict_contexts: bool = __debug__
    max_workers: int = Field(default=1, ge=1)
    max_grid_samples: int = Field(default=8_000_000, ge=8)
    eval_chunk_size: int = Field(default=262_144, ge=1)
    default_resolution: float = Field(default=0.1, gt=0)
    default_bounds_size: float = Field(default=2.5, gt=0)
    default_splitting_angle: float = Field(default=180.0, ge=0, le=180)
    warning_policy: WarningPolicy | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RuntimeConfig:
        """Build a config from ``SHAPEFIELD_*`` environment variables."""
        env = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for name in _ENV_FIELDS:
            raw = env.get(_ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        try:
            return cls(**values)
        except ValidationError as e:
            raise InvalidArgumentError(f"Invalid environment configuration:\n{e}") from e


_config: RuntimeConfig | None = None


def get_config() -> RuntimeConfig:
    """Return the active configuration, creating it from the environment on first use."""
    global _config
    if _config is None:
        _config = RuntimeConfig.from_env()
    return _config


def set_config(config: RuntimeConfig | None) -> RuntimeConfig | None:
    """Install *config* as the active configuration and return the previous one."""
    global _config
    previous = _config
    _config = config
    return previous


@contextmanager
def override_config(**changes: object) -> Iterator[RuntimeConfig]:
    """Temporarily replace selected configuration fields."""
    current = get_config()
    fields = {name: getattr(current, name) for name in RuntimeConfig.model_fields}
    updated = RuntimeConfig(**{**fields, **changes})
    previous = set_config(updated)
    try:
        yield updated
    finally:
        set_config(previous)
