"""Settings, the record store and the base class of the services."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from edgefleet.errors import AccountNotSet

T = TypeVar("T")


@dataclass
class Settings:
    """Paths and defaults used by the services."""

    default_ostree_ref: str = "rhel/8/x86_64/edge"
    repo_temp_path: str = "/tmp/repos/"
    templates_path: str = "/usr/local/etc/"
    iso_work_path: str = "/var/tmp/"
    fleetkick_script: str = "/usr/local/bin/fleetkick.sh"
    ostree_binary: str = "/usr/bin/ostree"
    poll_interval: float = 60.0


def _is_record(value: object) -> bool:
    return (
        dataclasses.is_dataclass(value)
        and not isinstance(value, type)
        and any(f.name == "id" for f in dataclasses.fields(value))
    )


class Store:
    """A thread-safe in-memory store of records, keyed by class and id.

    Records are dataclasses with an integer ``id``; an id of 0 means the
    record has not been stored. Nested single records are stored along
    with their parent and the parent's ``<field>_id`` is kept in step.
    """

    def __init__(self) -> None:
        self._tables: dict[type, dict[int, Any]] = {}
        self._next_ids: dict[type, int] = {}
        self._lock = threading.RLock()
        self._last_stamp: datetime | None = None

    def _stamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    def _cascade(self, record: Any) -> None:
        for f in dataclasses.fields(record):
            value = getattr(record, f.name)
            if not _is_record(value):
                continue
            self.save(value)
            id_attr = f"{f.name}_id"
            if hasattr(record, id_attr):
                setattr(record, id_attr, value.id)

    def _touch(self, record: Any, created: bool) -> None:
        stamp = self._stamp()
        if created and getattr(record, "created_at", False) is None:
            record.created_at = stamp
        if hasattr(record, "updated_at"):
            record.updated_at = stamp

    def add(self, record: T) -> T:
        """Store a new record, giving it an id if it has none."""
        with self._lock:
            self._cascade(record)
            kind = type(record)
            table = self._tables.setdefault(kind, {})
            next_id = self._next_ids.get(kind, 1)
            if record.id:
                if record.id in table and table[record.id] is not record:
                    raise ValueError(f"{kind.__name__} {record.id} already exists")
            else:
                record.id = next_id
            self._next_ids[kind] = max(next_id, record.id + 1)
            self._touch(record, created=True)
            table[record.id] = record
            return record

    def save(self, record: T) -> T:
        """Store a record, adding it if new and replacing it otherwise."""
        with self._lock:
            table = self._tables.get(type(record), {})
            if not record.id or record.id not in table:
                return self.add(record)
            self._cascade(record)
            self._touch(record, created=False)
            table[record.id] = record
            return record

    def get(self, kind: type[T], record_id: int | None) -> T | None:
        """Return the record of that class and id, or None."""
        if record_id is None:
            return None
        with self._lock:
            return self._tables.get(kind, {}).get(record_id)

    def find(
        self, kind: type[T], predicate: Callable[[T], bool] | None = None
    ) -> list[T]:
        """Return the records of a class that match, in order of id."""
        with self._lock:
            records = sorted(self._tables.get(kind, {}).values(), key=lambda r: r.id)
        if predicate is None:
            return records
        return [record for record in records if predicate(record)]

    def first(
        self,
        kind: type[T],
        predicate: Callable[[T], bool] | None = None,
        order_key: Callable[[T], Any] | None = None,
    ) -> T | None:
        """Return the first matching record, by ``order_key`` or by id."""
        records = self.find(kind, predicate)
        if order_key is not None:
            records.sort(key=order_key)
        return records[0] if records else None

    def delete(self, record: Any) -> bool:
        """Remove a record; tell whether it was there."""
        with self._lock:
            table = self._tables.get(type(record), {})
            if record.id in table:
                del table[record.id]
                return True
            return False


class Service:
    """Shared state of a service: the store, the settings and the account."""

    service_name = "service"

    def __init__(
        self,
        store: Store | None = None,
        settings: Settings | None = None,
        account: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store if store is not None else Store()
        self.settings = settings if settings is not None else Settings()
        self.account = account
        self.log = logger or logging.getLogger(f"edgefleet.{self.service_name}")

    def require_account(self) -> str:
        """Return the account of the request, or raise AccountNotSet."""
        if not self.account:
            raise AccountNotSet()
        return self.account