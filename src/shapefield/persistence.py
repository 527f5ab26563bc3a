"""Text and binary (de)serialization of expression trees."""

from __future__ import annotations

import re
import struct

from shapefield.errors import InvalidArgumentError, PersistenceError
from shapefield.kernel import GraphEntry, Kernel, NodeHandle
from shapefield.opcodes import Opcode, opcode_from_name

BINARY_MAGIC = b"SFT1"

_HEADER = struct.Struct("<4sI")
_OPCODE = struct.Struct("<B")
_CONST = struct.Struct("<d")
_INDEX = struct.Struct("<I")

_VARIABLE_NAMES = {Opcode.VAR_X: "x", Opcode.VAR_Y: "y", Opcode.VAR_Z: "z"}
_VARIABLES_BY_NAME = {name: op for op, name in _VARIABLE_NAMES.items()}
_TOKEN = re.compile(r"\(|\)|[^\s()]+")


# ---------------------------------------------------------------------------
# Text (S-expression)
# ---------------------------------------------------------------------------


def print_tree(kernel: Kernel, handle: NodeHandle) -> str:
    """Render a tree as an S-expression such as ``(sub (sqrt (add ...)) 1.0)``.

    Shared sub-graphs are written out at every use.
    """
    entries = kernel.linearize(handle)
    text: list[str] = []
    for opcode, value, lhs, rhs in entries:
        if opcode is Opcode.CONST:
            text.append(repr(value))
        elif opcode in _VARIABLE_NAMES:
            text.append(_VARIABLE_NAMES[opcode])
        elif rhs is None:
            text.append(f"({opcode.label} {text[lhs]})")
        else:
            text.append(f"({opcode.label} {text[lhs]} {text[rhs]})")
    return text[-1]


def parse_tree(kernel: Kernel, source: str) -> NodeHandle:
    """Parse the output of ``print_tree`` back into a new tree."""
    tokens = _TOKEN.findall(source)
    if not tokens:
        raise PersistenceError("Empty tree expression")

    entries: list[GraphEntry] = []
    # Each frame is [opcode label, operand entry indices]
    frames: list[list] = []
    root: int | None = None
    pos = 0
    while pos < len(tokens):
        token = tokens[pos]
        if token == "(":
            if pos + 1 >= len(tokens) or tokens[pos + 1] in ("(", ")"):
                raise PersistenceError(f"Expected operator name after '(' at token {pos}")
            frames.append([tokens[pos + 1], []])
            pos += 2
            continue
        if token == ")":
            if not frames:
                raise PersistenceError(f"Unbalanced ')' at token {pos}")
            label, operands = frames.pop()
            index = _append_operation(entries, label, operands)
        else:
            index = _append_atom(entries, token)
        pos += 1
        if frames:
            frames[-1][1].append(index)
        elif root is None:
            root = index
        else:
            raise PersistenceError("Trailing tokens after tree expression")

    if frames or root is None:
        raise PersistenceError("Unbalanced '(' in tree expression")
    try:
        return kernel.build_graph(entries)
    except InvalidArgumentError as e:
        raise PersistenceError(str(e)) from e


def _append_atom(entries: list[GraphEntry], token: str) -> int:
    if token in _VARIABLES_BY_NAME:
        entries.append((_VARIABLES_BY_NAME[token], 0.0, None, None))
    else:
        try:
            value = float(token)
        except ValueError:
            raise PersistenceError(f"Unknown atom {token!r}") from None
        entries.append((Opcode.CONST, value, None, None))
    return len(entries) - 1


def _append_operation(entries: list[GraphEntry], label: str, operands: list[int]) -> int:
    opcode = opcode_from_name(label)
    if opcode is None or opcode.arity == 0:
        raise PersistenceError(f"Unknown operator {label!r}")
    if len(operands) != opcode.arity:
        raise PersistenceError(
            f"Operator {label!r} takes {opcode.arity} operand(s), got {len(operands)}"
        )
    lhs = operands[0]
    rhs = operands[1] if opcode.arity == 2 else None
    entries.append((opcode, 0.0, lhs, rhs))
    return len(entries) - 1


# ---------------------------------------------------------------------------
# Binary
# ---------------------------------------------------------------------------


def serialize_tree(kernel: Kernel, handle: NodeHandle) -> bytes:
    """Encode a tree as ``SFT1`` bytes; node sharing is preserved."""
    entries = kernel.linearize(handle)
    chunks = [_HEADER.pack(BINARY_MAGIC, len(entries))]
    for opcode, value, lhs, rhs in entries:
        chunks.append(_OPCODE.pack(int(opcode)))
        if opcode is Opcode.CONST:
            chunks.append(_CONST.pack(value))
        for operand in (lhs, rhs):
            if operand is not None:
                chunks.append(_INDEX.pack(operand))
    return b"".join(chunks)


def deserialize_tree(kernel: Kernel, data: bytes) -> NodeHandle:
    """Decode bytes written by ``serialize_tree``."""
    try:
        magic, count = _HEADER.unpack_from(data, 0)
    except struct.error as e:
        raise PersistenceError(f"Truncated tree header: {e}") from e
    if magic != BINARY_MAGIC:
        raise PersistenceError(f"Not a serialized tree (magic {magic!r})")

    entries: list[GraphEntry] = []
    offset = _HEADER.size
    try:
        for _ in range(count):
            (code,) = _OPCODE.unpack_from(data, offset)
            offset += _OPCODE.size
            try:
                opcode = Opcode(code)
            except ValueError:
                raise PersistenceError(f"Unknown opcode {code} at byte {offset - 1}") from None
            value = 0.0
            if opcode is Opcode.CONST:
                (value,) = _CONST.unpack_from(data, offset)
                offset += _CONST.size
            operands: list[int] = []
            for _ in range(opcode.arity):
                (index,) = _INDEX.unpack_from(data, offset)
                offset += _INDEX.size
                operands.append(index)
            lhs = operands[0] if operands else None
            rhs = operands[1] if len(operands) > 1 else None
            entries.append((opcode, value, lhs, rhs))
    except struct.error as e:
        raise PersistenceError(f"Truncated tree data: {e}") from e
    if offset != len(data):
        raise PersistenceError(f"{len(data) - offset} trailing byte(s) after tree data")

    try:
        return kernel.build_graph(entries)
    except InvalidArgumentError as e:
        raise PersistenceError(str(e)) from e
