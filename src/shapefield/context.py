"""Scoped ownership of expression trees.

Every ``Tree`` registers with the thread's active ``Context`` when it is
built. Leaving the context releases every tree it still owns; a tree that must
outlive the scope is detached first with ``Context.remove``::

    with Context() as ctx:
        body = sphere(1.0) - 0.1
        ctx.remove(body)   # caller now owns ``body``
    # every other intermediate tree has been released here
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from shapefield.config import get_config
from shapefield.errors import ContextDisciplineError
from shapefield.warning_policy import emit_warning

if TYPE_CHECKING:
    from shapefield.tree import Tree

logger = logging.getLogger(__name__)

_state = threading.local()


def active_context() -> Context | None:
    """Return the innermost entered context of the calling thread, if any."""
    return getattr(_state, "active", None)


def _discipline_violation(message: str) -> None:
    config = get_config()
    if config.strict_contexts:
        raise ContextDisciplineError(message)
    emit_warning("W01", message, policy=config.warning_policy)


class Context:
    """Ordered set of owned trees plus a link to the context it replaced."""

    def __init__(self) -> None:
        self.prior: Context | None = None
        self._trees: dict[int, Tree] = {}
        self._entered = False
        self._closed = False

    def __len__(self) -> int:
        return len(self._trees)

    def __enter__(self) -> Context:
        return self.enter()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.exit()

    @property
    def active(self) -> bool:
        return active_context() is self

    def enter(self) -> Context:
        """Make this the active context of the calling thread."""
        if self._entered:
            _discipline_violation("Context entered twice")
            return self
        self._entered = True
        self.prior = active_context()
        _state.active = self
        return self

    def exit(self) -> None:
        """Release every owned tree and reactivate the prior context.

        Only the active context may exit; anything else is a discipline
        violation and leaves all state untouched.
        """
        if not self.active:
            _discipline_violation("Exiting a context that is not the active one")
            return
        trees = list(self._trees.values())
        self._trees.clear()
        self._closed = True
        _state.active = self.prior
        logger.debug("Context exit released %d tree(s)", len(trees))
        for tree in trees:
            tree.dispose()

    def add(self, tree: Tree) -> None:
        """Take ownership of *tree*; it is released when this context exits."""
        if self._closed:
            _discipline_violation("Adding a tree to a context that already exited")
            return
        self._trees[id(tree)] = tree

    def remove(self, tree: Tree) -> None:
        """Detach *tree* without releasing it; the caller becomes its owner."""
        if self._trees.pop(id(tree), None) is None:
            _discipline_violation("Removing a tree this context does not own")

    def owns(self, tree: Tree) -> bool:
        return self._trees.get(id(tree)) is tree
