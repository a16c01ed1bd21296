from __future__ import annotations
import threading
from contextlib import contextmanager
from typing import Iterator, Set, Tuple

from pmsync.errors import SyncInProgressError


class ScopeLocks:
    """Single-flight guard: one running sync per (repository, scope).

    A second caller is rejected immediately rather than queued.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: Set[Tuple[int, str]] = set()

    @contextmanager
    def hold(self, repository_id: int, scope: str) -> Iterator[None]:
        key = (repository_id, scope)
        with self._guard:
            if key in self._held:
                raise SyncInProgressError(repository_id, scope)
            self._held.add(key)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(key)
