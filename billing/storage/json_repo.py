from __future__ import annotations

import copy
import glob
import json
import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Mapping, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

from billing.errors import Conflict, NotFound, StorageUnavailable, ValidationError

logger = logging.getLogger(__name__)

Filter = Union[Mapping[str, Any], Callable[[Dict[str, Any]], bool], None]


def _json_default(o: Any) -> Any:
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    if isinstance(o, Decimal):
        return str(o)
    return str(o)


def _matches(row: Dict[str, Any], flt: Filter) -> bool:
    if flt is None:
        return True
    if callable(flt):
        return bool(flt(row))
    return all(row.get(k) == v for k, v in flt.items())


class JsonRepository:
    """
    JSON collection with a configurable primary key.

    Rows are kept in memory once loaded; writes go through ``_writing()``, which
    either joins the owning store's unit of work or, standalone, snapshots the
    rows, runs the mutation and flushes the file.
    - Backup rotation (backup_enabled, backup_keep)
    - Atomic file replacement (temp file + os.replace)
    - Skips the write when the content did not change
    """

    def __init__(
        self,
        filepath: Union[str, Path],
        entity_name: str = "entity",
        key: str = "id",
        *,
        backup_enabled: bool = True,
        backup_keep: int = 5,
        lock: Optional[threading.RLock] = None,
        atomic: Optional[Callable[[], ContextManager[Any]]] = None,
    ) -> None:
        self.filepath = Path(filepath)
        self.entity_name = entity_name
        self.key = key
        self.backup_enabled = backup_enabled
        self.backup_keep = max(0, int(backup_keep))
        self._lock = lock or threading.RLock()
        self._atomic = atomic
        self._rows: Optional[List[Dict[str, Any]]] = None
        self._snapshot: Optional[List[Dict[str, Any]]] = None
        self._dirty = False

        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        if not self.filepath.exists():
            self._write_raw([])

    # ---------------- low level I/O ---------------- #

    def _read_raw(self) -> List[Dict[str, Any]]:
        try:
            with self.filepath.open("r", encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, list) else []
        except FileNotFoundError:
            return []
        except json.JSONDecodeError:
            # corrupt file: keep a copy aside and start over
            backup = self.filepath.with_suffix(".corrupt.json")
            logger.warning("Corrupt %s file %s, moved aside to %s", self.entity_name, self.filepath, backup)
            try:
                shutil.copy2(self.filepath, backup)
            except OSError as e:
                raise StorageUnavailable(f"Cannot read {self.entity_name} store", path=str(self.filepath)) from e
            return []
        except OSError as e:
            raise StorageUnavailable(f"Cannot read {self.entity_name} store", path=str(self.filepath)) from e

    def _rotate_backups(self) -> None:
        if not self.backup_enabled or self.backup_keep <= 0:
            return
        pattern = str(self.filepath.with_suffix(".*.bak.json"))
        files = sorted(glob.glob(pattern))
        # keep the most recent ones
        for old in files[: max(0, len(files) - self.backup_keep)]:
            Path(old).unlink(missing_ok=True)

    def _write_raw(self, data: List[Mapping[str, Any]]) -> None:
        new_dump = json.dumps(list(data), ensure_ascii=False, indent=2, default=_json_default)

        try:
            if self.filepath.exists() and self.filepath.read_text(encoding="utf-8") == new_dump:
                return

            if self.backup_enabled and self.filepath.exists():
                ts = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
                shutil.copy2(self.filepath, self.filepath.with_suffix(f".{ts}.bak.json"))
                self._rotate_backups()

            fd, tmp = tempfile.mkstemp(dir=str(self.filepath.parent), prefix=f".{self.filepath.stem}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(new_dump)
                os.replace(tmp, self.filepath)
            finally:
                if os.path.exists(tmp):
                    os.unlink(tmp)
        except OSError as e:
            raise StorageUnavailable(f"Cannot write {self.entity_name} store", path=str(self.filepath)) from e

    # ---------------- unit of work ---------------- #

    @property
    def rows(self) -> List[Dict[str, Any]]:
        if self._rows is None:
            self._rows = self._read_raw()
        return self._rows

    def begin(self) -> None:
        self._snapshot = copy.deepcopy(self.rows)
        self._dirty = False

    def rollback(self) -> None:
        if self._snapshot is not None:
            self._rows = self._snapshot
        self._snapshot = None
        self._dirty = False

    def flush(self) -> None:
        if self._dirty:
            self._write_raw(self.rows)
        self._snapshot = None
        self._dirty = False

    def reload(self) -> None:
        """Forget the in-memory rows; the file is the source of truth again."""
        self._rows = None
        self._snapshot = None
        self._dirty = False

    @contextmanager
    def _writing(self) -> Iterator[None]:
        if self._atomic is not None:
            with self._atomic():
                yield
                self._dirty = True
            return
        with self._lock:
            self.begin()
            try:
                yield
            except BaseException:
                self.rollback()
                raise
            self._dirty = True
            try:
                self.flush()
            except StorageUnavailable:
                self.reload()
                raise

    # ---------------- helpers ---------------- #

    @staticmethod
    def _to_dict(item: Union[BaseModel, Mapping[str, Any]]) -> Dict[str, Any]:
        if isinstance(item, BaseModel):
            return item.model_dump(mode="json")
        return json.loads(json.dumps(dict(item), default=_json_default))

    def _index_of(self, flt: Filter) -> int:
        for i, row in enumerate(self.rows):
            if _matches(row, flt):
                return i
        return -1

    # ---------------- reads ---------------- #

    def list_all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self.rows)

    def get_by_id(self, obj_id: Any) -> Optional[Dict[str, Any]]:
        return self.find_one({self.key: str(obj_id)})

    def find(self, flt: Filter = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(r) for r in self.rows if _matches(r, flt)]

    def find_one(self, flt: Filter = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            idx = self._index_of(flt)
            return copy.deepcopy(self.rows[idx]) if idx >= 0 else None

    def count(self, flt: Filter = None) -> int:
        with self._lock:
            return sum(1 for r in self.rows if _matches(r, flt))

    # ---------------- writes ---------------- #

    def insert(self, item: Union[BaseModel, Mapping[str, Any]]) -> Dict[str, Any]:
        record = self._to_dict(item)
        k = self.key
        if not record.get(k):
            record[k] = uuid4().hex
        record.setdefault("version", 1)
        with self._writing():
            if self._index_of({k: record[k]}) >= 0:
                raise ValidationError(f"{self.entity_name} already exists", key=record[k])
            self.rows.append(record)
        return copy.deepcopy(record)

    def update_one_atomic(
        self,
        flt: Filter,
        update: Mapping[str, Any],
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Merge ``update`` into the single row matching ``flt`` and bump its version.
        ``expected_version`` set: the row's version must still match, else Conflict.
        """
        changes = self._to_dict(update)
        with self._writing():
            idx = self._index_of(flt)
            if idx < 0:
                raise NotFound(self.entity_name, _describe(flt))
            current = self.rows[idx]
            actual = current.get("version", 1)
            if expected_version is not None and actual != expected_version:
                raise Conflict(expected_version, actual, entity=self.entity_name, key=current.get(self.key))
            merged = {**current, **changes, "version": actual + 1}
            self.rows[idx] = merged
        return copy.deepcopy(merged)

    def increment(self, flt: Filter, field: str, amount: int = 1) -> int:
        """Atomically add ``amount`` to ``field``; returns the value before the increment."""
        with self._writing():
            idx = self._index_of(flt)
            if idx < 0:
                raise NotFound(self.entity_name, _describe(flt))
            row = self.rows[idx]
            before = int(row.get(field, 0))
            row[field] = before + amount
            row["version"] = row.get("version", 1) + 1
        return before

    def delete(self, flt: Filter) -> bool:
        with self._writing():
            idx = self._index_of(flt)
            if idx < 0:
                return False
            self.rows.pop(idx)
        return True


def _describe(flt: Filter) -> Any:
    if flt is None or callable(flt):
        return "<predicate>"
    return dict(flt)
