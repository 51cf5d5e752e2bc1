"""
State journal providing call-level revert semantics.

Contracts in this package keep their state in memory. To model the
all-or-nothing behaviour of a contract call (a flash loan that is not repaid
undoes everything, a failed sub-call leaves no partial effect) every stateful
component registers with a shared ``StateJournal`` and implements
``snapshot()`` / ``restore(snapshot)``.

Usage:
    journal = StateJournal()
    journal.register(token)
    with journal.atomic("swap"):
        token.transfer(...)
        raise SomeError()   # token balances are restored, error re-raised
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from threading import RLock
from typing import Any, Dict, Iterator, List, Protocol

logger = logging.getLogger(__name__)


class Journaled(Protocol):
    """Component whose state can be captured and restored."""

    def snapshot(self) -> Dict[str, Any]: ...

    def restore(self, snapshot: Dict[str, Any]) -> None: ...


class StateJournal:
    """
    Registry of journaled components with nestable savepoints.

    The journal holds an RLock for the duration of an outermost ``atomic``
    block, so a call and all of its nested sub-calls execute as one unit
    relative to other threads.
    """

    def __init__(self) -> None:
        self._components: List[Journaled] = []
        self._lock = RLock()
        self._depth = 0

    def register(self, component: Journaled) -> None:
        """Add a component to the journal (idempotent)."""
        with self._lock:
            if not any(existing is component for existing in self._components):
                self._components.append(component)

    def register_all(self, *components: Journaled) -> None:
        for component in components:
            self.register(component)

    @property
    def depth(self) -> int:
        """Current savepoint nesting depth (0 outside any atomic block)."""
        return self._depth

    def capture(self) -> List[tuple]:
        """Snapshot every registered component."""
        return [(component, component.snapshot()) for component in self._components]

    def rollback(self, captured: List[tuple]) -> None:
        """Restore components from a capture taken by ``capture()``."""
        for component, snap in captured:
            component.restore(snap)

    @contextmanager
    def atomic(self, label: str = "call") -> Iterator["StateJournal"]:
        """
        Run a block as a savepoint.

        If the block raises, every registered component is restored to the
        state it had on entry and the exception is re-raised unchanged.
        """
        with self._lock:
            captured = self.capture()
            self._depth += 1
            try:
                yield self
            except BaseException:
                self.rollback(captured)
                logger.debug(
                    "Savepoint reverted",
                    extra={
                        "event": "journal.revert",
                        "label": label,
                        "depth": self._depth,
                    },
                )
                raise
            finally:
                self._depth -= 1
