"""Operator catalogue for expression-tree nodes."""

from __future__ import annotations

from enum import IntEnum

import numpy as np


class Opcode(IntEnum):
    """Node operators. Numeric values are stable; binary tree files store them."""

    # Nonary
    CONST = 0
    VAR_X = 1
    VAR_Y = 2
    VAR_Z = 3
    # Unary
    NEG = 10
    SIN = 11
    COS = 12
    TAN = 13
    ASIN = 14
    ACOS = 15
    ATAN = 16
    EXP = 17
    ABS = 18
    LOG = 19
    RECIP = 20
    SQUARE = 21
    SQRT = 22
    # Binary
    ADD = 40
    SUB = 41
    MUL = 42
    DIV = 43
    MOD = 44
    MIN = 45
    MAX = 46
    POW = 47
    NTH_ROOT = 48
    ATAN2 = 49
    NANFILL = 50
    COMPARE = 51

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def arity(self) -> int:
        return _ARITY[self]


_LABELS: dict[Opcode, str] = {
    Opcode.CONST: "const",
    Opcode.VAR_X: "var-x",
    Opcode.VAR_Y: "var-y",
    Opcode.VAR_Z: "var-z",
    Opcode.NEG: "neg",
    Opcode.SIN: "sin",
    Opcode.COS: "cos",
    Opcode.TAN: "tan",
    Opcode.ASIN: "asin",
    Opcode.ACOS: "acos",
    Opcode.ATAN: "atan",
    Opcode.EXP: "exp",
    Opcode.ABS: "abs",
    Opcode.LOG: "log",
    Opcode.RECIP: "recip",
    Opcode.SQUARE: "square",
    Opcode.SQRT: "sqrt",
    Opcode.ADD: "add",
    Opcode.SUB: "sub",
    Opcode.MUL: "mul",
    Opcode.DIV: "div",
    Opcode.MOD: "mod",
    Opcode.MIN: "min",
    Opcode.MAX: "max",
    Opcode.POW: "pow",
    Opcode.NTH_ROOT: "nth-root",
    Opcode.ATAN2: "atan2",
    Opcode.NANFILL: "nanfill",
    Opcode.COMPARE: "compare",
}

_NONARY = (Opcode.CONST, Opcode.VAR_X, Opcode.VAR_Y, Opcode.VAR_Z)
_UNARY = (
    Opcode.NEG,
    Opcode.SIN,
    Opcode.COS,
    Opcode.TAN,
    Opcode.ASIN,
    Opcode.ACOS,
    Opcode.ATAN,
    Opcode.EXP,
    Opcode.ABS,
    Opcode.LOG,
    Opcode.RECIP,
    Opcode.SQUARE,
    Opcode.SQRT,
)
_BINARY = (
    Opcode.ADD,
    Opcode.SUB,
    Opcode.MUL,
    Opcode.DIV,
    Opcode.MOD,
    Opcode.MIN,
    Opcode.MAX,
    Opcode.POW,
    Opcode.NTH_ROOT,
    Opcode.ATAN2,
    Opcode.NANFILL,
    Opcode.COMPARE,
)

_ARITY: dict[Opcode, int] = {
    **{op: 0 for op in _NONARY},
    **{op: 1 for op in _UNARY},
    **{op: 2 for op in _BINARY},
}

_BY_LABEL: dict[str, Opcode] = {label: op for op, label in _LABELS.items()}

AXIS_VARIABLES: dict[str, Opcode] = {"x": Opcode.VAR_X, "y": Opcode.VAR_Y, "z": Opcode.VAR_Z}


def opcode_from_name(name: str) -> Opcode | None:
    """Look up an opcode by its label (``"add"``, ``"nth-root"``...). Returns None if unknown."""
    return _BY_LABEL.get(name)


def opcode_arity(op: int) -> int | None:
    """Return 0, 1 or 2 for a valid opcode value, None otherwise."""
    try:
        return Opcode(op).arity
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Vectorised numeric semantics
# ---------------------------------------------------------------------------


def _compare(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.sign(a - b)


def _nanfill(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.where(np.isnan(a), b, a)


def _nth_root(a: np.ndarray, n: np.ndarray) -> np.ndarray:
    return np.power(a, 1.0 / n)


UNARY_FUNCS = {
    Opcode.NEG: np.negative,
    Opcode.SIN: np.sin,
    Opcode.COS: np.cos,
    Opcode.TAN: np.tan,
    Opcode.ASIN: np.arcsin,
    Opcode.ACOS: np.arccos,
    Opcode.ATAN: np.arctan,
    Opcode.EXP: np.exp,
    Opcode.ABS: np.abs,
    Opcode.LOG: np.log,
    Opcode.RECIP: np.reciprocal,
    Opcode.SQUARE: np.square,
    Opcode.SQRT: np.sqrt,
}

BINARY_FUNCS = {
    Opcode.ADD: np.add,
    Opcode.SUB: np.subtract,
    Opcode.MUL: np.multiply,
    Opcode.DIV: np.divide,
    Opcode.MOD: np.mod,
    Opcode.MIN: np.minimum,
    Opcode.MAX: np.maximum,
    Opcode.POW: np.power,
    Opcode.NTH_ROOT: _nth_root,
    Opcode.ATAN2: np.arctan2,
    Opcode.NANFILL: _nanfill,
    Opcode.COMPARE: _compare,
}
