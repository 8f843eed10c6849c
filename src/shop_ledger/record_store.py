"""Record Store and side store implementations.

The core depends only on the :class:`RecordStore` and :class:`KeyValueStore`
interfaces defined here. Two backends are provided for each: an in-memory
one used by tests and scratch sessions, and a workbook one that keeps every
collection on its own ``openpyxl`` worksheet.

Every primitive runs under a store lock acquired with a timeout. A lock that
cannot be acquired in time, or a backend that raises, surfaces as
:class:`~shop_ledger.errors.StoreUnavailableError` so callers can decide
whether to degrade or abort.
"""

from __future__ import annotations

import copy
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .errors import StoreUnavailableError


Record = Dict[str, Any]
Query = Mapping[str, Any]


def matches(record: Mapping[str, Any], query: Query) -> bool:
    """Return ``True`` when every key in ``query`` equals the record value."""

    return all(record.get(key) == value for key, value in query.items())


def generate_record_key() -> str:
    """Generate an opaque ``_id`` for records inserted without one."""

    return uuid.uuid4().hex


class _GuardedStore:
    """Shared timeout guard for store implementations."""

    def __init__(self, *, timeout: float = data_manager.DEFAULT_STORE_TIMEOUT):
        self.timeout = timeout
        self._lock = threading.RLock()

    @contextmanager
    def _guard(self, action: str, target: str) -> Iterator[None]:
        if not self._lock.acquire(timeout=self.timeout):
            log.error("Store %s on '%s' timed out after %.2fs", action, target, self.timeout)
            raise StoreUnavailableError(f"Store {action} on '{target}' timed out")
        try:
            yield
        except StoreUnavailableError:
            raise
        except Exception as exc:
            log.error("Store %s on '%s' failed: %s", action, target, exc)
            raise StoreUnavailableError(f"Store {action} on '{target}' failed: {exc}") from exc
        finally:
            self._lock.release()


class RecordStore(_GuardedStore, ABC):
    """Keyed document collections addressed by name.

    Subclasses implement three backend hooks: :meth:`_read`, :meth:`_write`
    and :meth:`_names`. Unknown collections read as empty lists. Returned
    records are copies; mutating them never changes stored state.
    """

    @abstractmethod
    def _read(self, collection: str) -> List[Record]:
        """Return the stored records of ``collection`` in insertion order."""

    @abstractmethod
    def _write(self, collection: str, records: List[Record]) -> None:
        """Replace the stored records of ``collection``."""

    @abstractmethod
    def _names(self) -> List[str]:
        """Return the names of collections that currently hold storage."""

    def get(self, collection: str) -> List[Record]:
        with self._guard("get", collection):
            return copy.deepcopy(self._read(collection))

    def get_one(self, collection: str, query: Query) -> Optional[Record]:
        with self._guard("get_one", collection):
            for record in self._read(collection):
                if matches(record, query):
                    return copy.deepcopy(record)
        return None

    def insert(self, collection: str, record: Mapping[str, Any]) -> Record:
        """Append ``record`` and return the stored copy.

        Records that carry neither ``id`` nor ``_id`` receive a generated
        ``_id`` the same way a document database would assign one.
        """

        stored = copy.deepcopy(dict(record))
        if data_manager.document_key(stored) is None:
            stored["_id"] = generate_record_key()
        with self._guard("insert", collection):
            records = self._read(collection)
            records.append(stored)
            self._write(collection, records)
        return copy.deepcopy(stored)

    def update(self, collection: str, query: Query, patch: Mapping[str, Any]) -> int:
        """Merge ``patch`` into every record matching ``query``.

        Returns:
            int: Number of records updated.
        """

        updated = 0
        with self._guard("update", collection):
            records = self._read(collection)
            for record in records:
                if matches(record, query):
                    record.update(copy.deepcopy(dict(patch)))
                    updated += 1
            if updated:
                self._write(collection, records)
        return updated

    def remove(self, collection: str, query: Query) -> int:
        """Delete every record matching ``query`` and return how many went."""

        with self._guard("remove", collection):
            records = self._read(collection)
            kept = [record for record in records if not matches(record, query)]
            removed = len(records) - len(kept)
            if removed:
                self._write(collection, kept)
        return removed

    def set(self, collection: str, records: Sequence[Mapping[str, Any]]) -> None:
        with self._guard("set", collection):
            self._write(collection, [copy.deepcopy(dict(record)) for record in records])

    def count(self, collection: str) -> int:
        with self._guard("count", collection):
            return len(self._read(collection))

    def clear(self, collection: str) -> int:
        with self._guard("clear", collection):
            removed = len(self._read(collection))
            self._write(collection, [])
        return removed

    def collections(self) -> List[str]:
        with self._guard("collections", "*"):
            return list(self._names())


class MemoryRecordStore(RecordStore):
    """Record Store held entirely in process memory."""

    def __init__(self, *, timeout: float = data_manager.DEFAULT_STORE_TIMEOUT,
                 initial: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None):
        super().__init__(timeout=timeout)
        self._collections: Dict[str, List[Record]] = {}
        for name, records in (initial or {}).items():
            self._collections[name] = [copy.deepcopy(dict(record)) for record in records]

    def _read(self, collection: str) -> List[Record]:
        return list(self._collections.get(collection, []))

    def _write(self, collection: str, records: List[Record]) -> None:
        self._collections[collection] = records

    def _names(self) -> List[str]:
        return list(self._collections)


class WorkbookRecordStore(RecordStore):
    """Record Store backed by one worksheet per collection.

    Writes only touch the in-memory workbook; callers persist the file with
    :func:`shop_ledger.core_logic.persist_context`.
    """

    def __init__(self, workbook: Workbook, *, timeout: float = data_manager.DEFAULT_STORE_TIMEOUT):
        super().__init__(timeout=timeout)
        self.workbook = workbook

    def _read(self, collection: str) -> List[Record]:
        return list(data_manager.iter_documents(self.workbook, collection))

    def _write(self, collection: str, records: List[Record]) -> None:
        data_manager.write_documents(self.workbook, collection, records)

    def _names(self) -> List[str]:
        return [name for name in self.workbook.sheetnames if name != data_manager.SIDE_STORE_SHEET]


class KeyValueStore(_GuardedStore, ABC):
    """Small key-value side store kept apart from the Record Store.

    It plays the role of browser ``localStorage``: backup bookkeeping,
    sequence counters and the extra copies of trade instruments live here.
    """

    @abstractmethod
    def _load(self) -> Dict[str, Any]:
        """Return every stored item."""

    @abstractmethod
    def _save(self, items: Dict[str, Any]) -> None:
        """Replace every stored item."""

    def get_item(self, key: str, default: Any = None) -> Any:
        with self._guard("get_item", key):
            items = self._load()
            if key not in items:
                return default
            return copy.deepcopy(items[key])

    def set_item(self, key: str, value: Any) -> None:
        with self._guard("set_item", key):
            items = self._load()
            items[key] = copy.deepcopy(value)
            self._save(items)

    def remove_item(self, key: str) -> bool:
        with self._guard("remove_item", key):
            items = self._load()
            if key not in items:
                return False
            del items[key]
            self._save(items)
        return True

    def keys(self) -> List[str]:
        with self._guard("keys", "*"):
            return list(self._load())

    def clear(self) -> int:
        with self._guard("clear", "*"):
            removed = len(self._load())
            self._save({})
        return removed


class MemoryKeyValueStore(KeyValueStore):
    """Side store held in process memory."""

    def __init__(self, *, timeout: float = data_manager.DEFAULT_STORE_TIMEOUT):
        super().__init__(timeout=timeout)
        self._items: Dict[str, Any] = {}

    def _load(self) -> Dict[str, Any]:
        return dict(self._items)

    def _save(self, items: Dict[str, Any]) -> None:
        self._items = items


class WorkbookKeyValueStore(KeyValueStore):
    """Side store kept on the workbook's ``SideStore`` worksheet."""

    def __init__(self, workbook: Workbook, *, timeout: float = data_manager.DEFAULT_STORE_TIMEOUT):
        super().__init__(timeout=timeout)
        self.workbook = workbook

    def _load(self) -> Dict[str, Any]:
        return dict(data_manager.iter_side_items(self.workbook))

    def _save(self, items: Dict[str, Any]) -> None:
        data_manager.write_side_items(self.workbook, items)


class KeyedLocks:
    """Per-key re-entrant locks used to serialise read-modify-write cycles.

    Keys name the resource being mutated (``party:<id>``, ``ledger:cash``).
    Acquisition waits at most ``timeout`` seconds and then raises
    :class:`StoreUnavailableError`.
    """

    def __init__(self, *, timeout: float = data_manager.DEFAULT_STORE_TIMEOUT):
        self.timeout = timeout
        self._locks: Dict[str, Any] = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, key: str) -> Any:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.lock_for(key)
        if not lock.acquire(timeout=self.timeout):
            log.error("Timed out waiting for write lock '%s'", key)
            raise StoreUnavailableError(f"Timed out waiting for write lock '{key}'")
        try:
            yield
        finally:
            lock.release()
