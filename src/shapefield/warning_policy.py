"""Coded diagnostics for conditions the render loop survives."""

from __future__ import annotations

import warnings
from dataclasses import dataclass

from shapefield.errors import PolicyError

WARNING_CODES: dict[str, str] = {
    "W01": "lifetime context misuse tolerated (lenient contexts)",
    "W02": "shape failed to evaluate; its previous tree is kept",
    "W03": "render skipped while an earlier job for the shape is outstanding",
    "W04": "render failed in the kernel; retried on the next tick",
    "W05": "render settings rejected; the shape contributes no geometry",
}

KNOWN_CODES: frozenset[str] = frozenset(WARNING_CODES)


def _check_code(code: str) -> None:
    if code not in WARNING_CODES:
        raise ValueError(f"Unknown warning code: {code!r} (known: {sorted(WARNING_CODES)})")


class ShapefieldWarning(UserWarning):
    """Warning tagged with one of the ``WARNING_CODES``."""

    def __init__(self, code: str, message: str) -> None:
        _check_code(code)
        self.code = code
        super().__init__(f"[{code}] {message}")

    @property
    def summary(self) -> str:
        return WARNING_CODES[self.code]


@dataclass(frozen=True)
class WarningPolicy:
    """Per-code overrides: escalate to ``PolicyError`` or drop silently.

    Escalation wins when a code appears in both sets.
    """

    warn_as_error: frozenset[str] = frozenset()
    suppress: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        for code in self.warn_as_error | self.suppress:
            _check_code(code)

    @classmethod
    def from_options(cls, warn_as_error: str | None, suppress: str | None) -> WarningPolicy | None:
        """Build a policy from comma-separated code lists; ``None`` when both are unset."""
        if warn_as_error is None and suppress is None:
            return None
        return cls(
            warn_as_error=parse_code_list(warn_as_error or ""),
            suppress=parse_code_list(suppress or ""),
        )

    def action(self, code: str) -> str:
        """``"error"``, ``"ignore"`` or ``"warn"`` for *code*."""
        if code in self.warn_as_error:
            return "error"
        if code in self.suppress:
            return "ignore"
        return "warn"


def emit_warning(code: str, message: str, *, policy: WarningPolicy | None = None) -> None:
    """Issue a ``ShapefieldWarning`` unless *policy* suppresses or escalates the code."""
    _check_code(code)
    action = policy.action(code) if policy is not None else "warn"
    if action == "error":
        raise PolicyError(f"[{code}] {message}")
    if action == "warn":
        warnings.warn(ShapefieldWarning(code, message), stacklevel=2)


def parse_code_list(raw: str) -> frozenset[str]:
    """Parse ``"W01, W03"`` into a set of codes; unknown codes raise ``ValueError``."""
    codes = frozenset(token.strip().upper() for token in raw.split(",") if token.strip())
    for code in codes:
        _check_code(code)
    return codes
