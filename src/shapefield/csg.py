"""Constructive solid geometry combinators over expression trees."""

from __future__ import annotations

from collections.abc import Sequence

from shapefield.errors import InvalidArgumentError
from shapefield.tree import Tree, maximum, minimum, sqrt


def _shape_list(name: str, shapes: Sequence[Tree]) -> list[Tree]:
    # Accept both union(a, b, c) and union([a, b, c])
    if len(shapes) == 1 and isinstance(shapes[0], (list, tuple)):
        shapes = shapes[0]
    shapes = list(shapes)
    if not shapes:
        raise InvalidArgumentError(f"{name}() requires at least one shape")
    return shapes


def union(*shapes: Tree) -> Tree:
    items = _shape_list("union", shapes)
    result = items[0]
    for shape in items[1:]:
        result = minimum(result, shape)
    return result


def intersection(*shapes: Tree) -> Tree:
    items = _shape_list("intersection", shapes)
    result = items[0]
    for shape in items[1:]:
        result = maximum(result, shape)
    return result


def inverse(shape: Tree) -> Tree:
    return -shape


def difference(*shapes: Tree) -> Tree:
    """Subtract every following shape from the first."""
    items = _shape_list("difference", shapes)
    if len(items) == 1:
        return items[0]
    return intersection(items[0], inverse(union(items[1:])))


def blend(a: Tree, b: Tree, amount: float = 0.5) -> Tree:
    """Union of *a* and *b* with a fillet whose size grows with *amount*."""
    return union(a, b, sqrt(abs(a)) + sqrt(abs(b)) - amount)


def blend_all(amount: float, *shapes: Tree) -> Tree:
    items = _shape_list("blend", shapes)
    result = items[0]
    for shape in items[1:]:
        result = blend(result, shape, amount)
    return result


def shell(shape: Tree, offset: float) -> Tree:
    """Hollow out *shape*, leaving a wall ``2 * offset`` thick around its surface."""
    return abs(shape) - offset
