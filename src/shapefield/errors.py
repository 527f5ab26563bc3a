"""Custom exception hierarchy for Shapefield."""


class ShapefieldError(Exception):
    """Base exception for all Shapefield errors."""


class InvalidOperandError(ShapefieldError):
    """Raised when a null, released or foreign tree handle is used as an operand."""


class InvalidArgumentError(ShapefieldError):
    """Raised for bad arguments: empty shape lists, unknown opcodes, bad parameters."""


class ContextDisciplineError(ShapefieldError):
    """Raised when lifetime contexts are exited out of order or trees double-removed."""


class ResourceExhaustionError(ShapefieldError):
    """Raised when a render attempt exceeds its memory or sample budget."""


class JobConflictError(ShapefieldError):
    """Raised when a render job overlaps another on the same target, or is consumed twice."""


class ParseError(ShapefieldError):
    """Raised when scene YAML parsing or schema deserialization fails."""


class PersistenceError(ShapefieldError):
    """Raised when a serialized tree cannot be decoded."""


class PolicyError(ShapefieldError):
    """Raised when a warning code is escalated to an error by the warning policy."""
