"""
Device document store on top of the `devices` table.

Two writers share each device record: the edge agent (probe results) and the
staleness auditor (status recomputed from timestamps). Each writer may only
touch the fields it owns (FIELD_OWNERS), and every write bumps `version`, so a
writer that decided on an older version loses instead of overwriting.

After every committed write, subscribers receive a ChangeEvent with the
document before and after the write.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .models.agent import Agent
from .models.device import Device
from .schemas import DeviceStatus

logger = logging.getLogger(__name__)

EDGE = "edge"
AUDITOR = "auditor"
ADMIN = "admin"

FIELD_OWNERS: dict[str, frozenset[str]] = {
    EDGE: frozenset({
        "agent_id", "address", "hardware_address", "display_name",
        "status", "first_seen_at", "last_seen_at", "latency_ms",
        "consecutive_failures", "observation_count",
    }),
    # first_seen_at / last_seen_at / observation_count only for first-write stamping.
    AUDITOR: frozenset({"status", "first_seen_at", "last_seen_at", "observation_count"}),
    ADMIN: frozenset({"agent_id", "address", "hardware_address", "display_name", "status", "last_seen_at"}),
}

# Set once, then kept even if a later write carries another value.
SET_ONCE_FIELDS = frozenset({"first_seen_at", "hardware_address"})

DOCUMENT_FIELDS = (
    "device_id", "agent_id", "address", "hardware_address", "display_name",
    "status", "first_seen_at", "last_seen_at", "latency_ms",
    "consecutive_failures", "observation_count", "version", "updated_at",
)
_DATETIME_FIELDS = frozenset({"first_seen_at", "last_seen_at", "updated_at"})

MERGE_ATTEMPTS = 3


class StoreError(Exception):
    pass


class DeviceNotFound(StoreError):
    pass


class VersionConflict(StoreError):
    """The record changed since the caller read it."""


class FieldOwnershipError(StoreError):
    pass


class InvalidDocument(StoreError):
    pass


@dataclass(frozen=True)
class ChangeEvent:
    device_id: str
    before: Optional[dict[str, Any]]
    after: Optional[dict[str, Any]]
    writer: str


Listener = Callable[[ChangeEvent], None]


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _to_db(dt: datetime) -> datetime:
    return to_utc(dt).replace(tzinfo=None)


def to_document(row: Device) -> dict[str, Any]:
    doc = {name: getattr(row, name) for name in DOCUMENT_FIELDS}
    for name in _DATETIME_FIELDS:
        doc[name] = to_utc(doc[name])
    return doc


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceStore:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = _utcnow):
        self._session_factory = session_factory
        self._clock = clock
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def get(self, device_id: str) -> Optional[dict[str, Any]]:
        with self._session_factory() as db:
            row = db.get(Device, device_id)
            return to_document(row) if row else None

    def all(self, status: Optional[str] = None) -> list[dict[str, Any]]:
        with self._session_factory() as db:
            query = db.query(Device)
            if status:
                query = query.filter(Device.status == status)
            return [to_document(row) for row in query.order_by(Device.device_id).all()]

    def merge_set(self, device_id: str, fields: dict[str, Any], writer: str) -> dict[str, Any]:
        """
        Create the device or merge `fields` into it.

        Fields set to None are skipped, so a merge never clears anything.
        Lost races against another writer are retried on the fresh record.
        """
        self._check_owner(writer, fields)
        for attempt in range(1, MERGE_ATTEMPTS + 1):
            try:
                before, after = self._merge_once(device_id, fields)
            except (StaleDataError, IntegrityError) as e:
                if attempt == MERGE_ATTEMPTS:
                    raise VersionConflict(f"device {device_id}: gave up merging after {attempt} attempts") from e
                logger.debug("Merge into %s raced another writer (attempt %d), retrying", device_id, attempt)
                continue
            self._publish(ChangeEvent(device_id, before, after, writer))
            return after
        raise AssertionError("unreachable")

    def conditional_update(
        self,
        device_id: str,
        expected_version: int,
        fields: dict[str, Any],
        writer: str,
    ) -> dict[str, Any]:
        """
        Apply `fields` only if the stored version is still `expected_version`.

        Raises VersionConflict otherwise; the caller should drop its decision.
        """
        self._check_owner(writer, fields)
        try:
            with self._session_factory() as db:
                row = db.get(Device, device_id)
                if row is None:
                    raise DeviceNotFound(device_id)
                if row.version != expected_version:
                    raise VersionConflict(
                        f"device {device_id}: expected version {expected_version}, found {row.version}"
                    )
                before = to_document(row)
                self._apply(row, fields)
                row.updated_at = _to_db(self._clock())
                self._touch_agent(db, row.agent_id)
                db.commit()
                after = to_document(row)
        except StaleDataError as e:
            raise VersionConflict(f"device {device_id}: changed during update") from e

        self._publish(ChangeEvent(device_id, before, after, writer))
        return after

    def _merge_once(self, device_id: str, fields: dict[str, Any]) -> tuple[Optional[dict], dict]:
        with self._session_factory() as db:
            row = db.get(Device, device_id)
            before = to_document(row) if row else None
            # Agent first: its row must exist before a device can reference it.
            self._touch_agent(db, fields.get("agent_id") or (row.agent_id if row else None))
            if row is None:
                row = Device(
                    device_id=device_id,
                    status=DeviceStatus.UNKNOWN.value,
                    consecutive_failures=0,
                    observation_count=0,
                )
                db.add(row)
            self._apply(row, fields)
            row.updated_at = _to_db(self._clock())
            db.commit()
            return before, to_document(row)

    def _apply(self, row: Device, fields: dict[str, Any]) -> None:
        for name, value in fields.items():
            if value is None or value == "":
                continue
            if isinstance(value, Enum):
                value = value.value
            if name == "status" and value not in {s.value for s in DeviceStatus}:
                raise InvalidDocument(f"invalid status {value!r}")
            if name in SET_ONCE_FIELDS and getattr(row, name) is not None:
                continue
            if name == "observation_count" and row.observation_count is not None:
                # Only ever grows, even when a restarted edge counts from zero again.
                value = max(row.observation_count, int(value))
            if name in _DATETIME_FIELDS:
                value = _to_db(value)
            setattr(row, name, value)

        if row.first_seen_at and row.last_seen_at and row.first_seen_at > row.last_seen_at:
            raise InvalidDocument(
                f"device {row.device_id}: first_seen_at {row.first_seen_at} is after last_seen_at {row.last_seen_at}"
            )

    def _touch_agent(self, db: Session, agent_id: Optional[str]) -> None:
        """Any write for one of its devices counts as agent activity."""
        if not agent_id:
            return
        now = _to_db(self._clock())
        agent = db.get(Agent, agent_id)
        if agent is None:
            agent = Agent(agent_id=agent_id, host="unknown", created_at=now)
            db.add(agent)
            db.flush()
        agent.last_active_at = now

    def _check_owner(self, writer: str, fields: dict[str, Any]) -> None:
        owned = FIELD_OWNERS.get(writer)
        if owned is None:
            raise FieldOwnershipError(f"unknown writer {writer!r}")
        foreign = sorted(set(fields) - owned)
        if foreign:
            raise FieldOwnershipError(f"writer {writer!r} does not own fields {foreign}")

    def _publish(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # The write already committed; a failing listener must not undo it.
                logger.exception("Change listener failed for device %s", event.device_id)
