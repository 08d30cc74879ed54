from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Tuple, TypeVar, Union

from billing.errors import StorageUnavailable
from billing.storage.json_repo import JsonRepository

logger = logging.getLogger(__name__)

R = TypeVar("R")

# Flush order matters: counters go first, so a crash between two file writes
# leaves at worst a numbering gap, never a reused number.
COLLECTIONS: Tuple[str, ...] = (
    "sequences",
    "companies",
    "customers",
    "products",
    "quotations",
    "invoices",
    "credit_notes",
    "debit_notes",
)


class JsonStore:
    """
    Set of JSON collections sharing one re-entrant lock.

    ``atomic()`` / ``transaction(fn)`` run a unit of work: every collection is
    snapshotted, the work mutates the in-memory rows, and the dirty ones are
    flushed on success. Any exception rolls every collection back. Nested calls
    join the outer unit of work.
    """

    def __init__(
        self,
        data_dir: Union[str, Path],
        *,
        backup_enabled: bool = True,
        backup_keep: int = 5,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._depth = 0
        self._repos: Dict[str, JsonRepository] = {
            name: JsonRepository(
                self.data_dir / f"{name}.json",
                entity_name=name,
                key="id",
                backup_enabled=backup_enabled,
                backup_keep=backup_keep,
                lock=self._lock,
                atomic=self.atomic,
            )
            for name in COLLECTIONS
        }

    def collection(self, name: str) -> JsonRepository:
        try:
            return self._repos[name]
        except KeyError:
            raise KeyError(f"Unknown collection '{name}'") from None

    def __getitem__(self, name: str) -> JsonRepository:
        return self.collection(name)

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def atomic(self) -> Iterator["JsonStore"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            repos = [self._repos[name] for name in COLLECTIONS]
            for repo in repos:
                repo.begin()
            self._depth = 1
            try:
                yield self
            except BaseException:
                for repo in repos:
                    repo.rollback()
                raise
            finally:
                self._depth = 0

            try:
                for repo in repos:
                    repo.flush()
            except StorageUnavailable:
                # some files may already be on disk: trust the disk, not memory
                logger.warning("Commit failed in %s, reloading collections from disk", self.data_dir)
                for repo in repos:
                    repo.reload()
                raise

    def transaction(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        with self.atomic():
            return fn(*args, **kwargs)
