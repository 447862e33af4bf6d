"""
share_store.py: Persistence for share records and the access log.

ShareStore is the narrow interface the share engine talks to. Two backends:

  SqlShareStore       durable, one SQLAlchemy session per request
  InMemoryShareStore  process-local; used for the explicit demo mode and
                      as the "unsynced" fallback for share creation

Every counter mutation is a single conditional statement (SQL) or runs under
one lock (memory), so concurrent downloads cannot lose updates or overshoot
max_downloads.
"""

import abc
import dataclasses
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
from errors import DuplicateTokenError, PersistenceError

logger = logging.getLogger(__name__)

ACCESS_TYPES = ("view", "download", "email", "print")
ACCESS_METHODS = ("link", "email", "direct", "qrcode")


@dataclass(frozen=True)
class ShareRecord:
    id: str
    token: str
    owner_id: int
    certificate_ids: tuple
    created_at: datetime
    expires_at: Optional[datetime] = None
    is_password_protected: bool = False
    password_hash: Optional[str] = None
    max_downloads: Optional[int] = None
    download_count: int = 0
    view_count: int = 0
    is_revoked: bool = False
    failed_password_attempts: int = 0
    password_locked_until: Optional[datetime] = None

    def __post_init__(self):
        if self.is_password_protected and not self.password_hash:
            raise ValueError("password-protected share requires a password hash")


@dataclass(frozen=True)
class AccessLogEntry:
    certificate_id: str
    access_type: str
    access_method: str
    timestamp: datetime
    share_id: Optional[str] = None
    recipient_email: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    id: Optional[int] = field(default=None, compare=False)

    def __post_init__(self):
        if self.access_type not in ACCESS_TYPES:
            raise ValueError(f"unknown access_type {self.access_type!r}")
        if self.access_method not in ACCESS_METHODS:
            raise ValueError(f"unknown access_method {self.access_method!r}")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything in the engine is UTC-aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ShareStore(abc.ABC):
    """Share table keyed by token (unique) plus the append-only access log."""

    durable = True

    @abc.abstractmethod
    def insert_share(self, record: ShareRecord) -> None:
        ...

    @abc.abstractmethod
    def get_by_token(self, token: str) -> Optional[ShareRecord]:
        ...

    @abc.abstractmethod
    def get_by_id(self, share_id: str) -> Optional[ShareRecord]:
        ...

    @abc.abstractmethod
    def list_by_owner(self, owner_id: int) -> List[ShareRecord]:
        ...

    @abc.abstractmethod
    def increment_download_count(self, share_id: str) -> bool:
        """Atomically claim one download. False if the share is capped out or revoked."""

    @abc.abstractmethod
    def increment_view_count(self, share_id: str) -> None:
        ...

    @abc.abstractmethod
    def revoke(self, share_id: str) -> None:
        ...

    @abc.abstractmethod
    def register_failed_password(self, share_id: str, max_attempts: int, lock_until: datetime) -> int:
        """Count one wrong password; lock the share's password path once max_attempts is hit.

        Returns the attempt count after this failure (0 if it triggered the lock).
        """

    @abc.abstractmethod
    def reset_failed_passwords(self, share_id: str) -> None:
        ...

    @abc.abstractmethod
    def append_access_log(self, entry: AccessLogEntry) -> None:
        ...

    @abc.abstractmethod
    def list_access_logs(
        self,
        share_id: Optional[str] = None,
        certificate_ids: Optional[List[str]] = None,
        since: Optional[datetime] = None,
    ) -> List[AccessLogEntry]:
        """Newest first."""


# ─────────────────────────────────────────────────────────────
# SQL backend
# ─────────────────────────────────────────────────────────────

def _share_to_record(row: models.Share) -> ShareRecord:
    return ShareRecord(
        id=row.id,
        token=row.token,
        owner_id=row.owner_id,
        certificate_ids=tuple(row.certificate_ids or ()),
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
        is_password_protected=bool(row.is_password_protected),
        password_hash=row.password_hash,
        max_downloads=row.max_downloads,
        download_count=row.download_count or 0,
        view_count=row.view_count or 0,
        is_revoked=bool(row.is_revoked),
        failed_password_attempts=row.failed_password_attempts or 0,
        password_locked_until=as_utc(row.password_locked_until),
    )


def _log_to_entry(row: models.AccessLog) -> AccessLogEntry:
    return AccessLogEntry(
        id=row.id,
        certificate_id=row.certificate_id,
        access_type=row.access_type,
        access_method=row.access_method,
        share_id=row.share_id,
        recipient_email=row.recipient_email,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        timestamp=as_utc(row.timestamp),
    )


class SqlShareStore(ShareStore):

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except IntegrityError as e:
            self.db.rollback()
            if "token" in str(e.orig).lower():
                raise DuplicateTokenError("share token already exists") from e
            logger.exception(f"Integrity error during {operation}")
            raise PersistenceError(f"{operation} failed") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception(f"Store error during {operation}")
            raise PersistenceError(f"{operation} failed") from e

    def _shares(self):
        return self.db.query(models.Share)

    def insert_share(self, record: ShareRecord) -> None:
        with self._guard("insert_share"):
            self.db.add(models.Share(
                id=record.id,
                token=record.token,
                owner_id=record.owner_id,
                certificate_ids=list(record.certificate_ids),
                created_at=record.created_at,
                expires_at=record.expires_at,
                is_password_protected=record.is_password_protected,
                password_hash=record.password_hash,
                max_downloads=record.max_downloads,
                download_count=0,
                view_count=0,
                is_revoked=False,
                failed_password_attempts=0,
            ))
            self.db.commit()

    def get_by_token(self, token: str) -> Optional[ShareRecord]:
        with self._guard("get_by_token"):
            row = self._shares().filter(models.Share.token == token).first()
            return _share_to_record(row) if row else None

    def get_by_id(self, share_id: str) -> Optional[ShareRecord]:
        with self._guard("get_by_id"):
            row = self._shares().filter(models.Share.id == share_id).first()
            return _share_to_record(row) if row else None

    def list_by_owner(self, owner_id: int) -> List[ShareRecord]:
        with self._guard("list_by_owner"):
            rows = self._shares().filter(
                models.Share.owner_id == owner_id
            ).order_by(models.Share.created_at.desc()).all()
            return [_share_to_record(r) for r in rows]

    def increment_download_count(self, share_id: str) -> bool:
        with self._guard("increment_download_count"):
            updated = self._shares().filter(
                models.Share.id == share_id,
                models.Share.is_revoked == False,  # noqa: E712
                or_(
                    models.Share.max_downloads.is_(None),
                    models.Share.download_count < models.Share.max_downloads,
                ),
            ).update(
                {models.Share.download_count: models.Share.download_count + 1},
                synchronize_session=False,
            )
            self.db.commit()
            return updated == 1

    def increment_view_count(self, share_id: str) -> None:
        with self._guard("increment_view_count"):
            self._shares().filter(models.Share.id == share_id).update(
                {models.Share.view_count: models.Share.view_count + 1},
                synchronize_session=False,
            )
            self.db.commit()

    def revoke(self, share_id: str) -> None:
        with self._guard("revoke"):
            self._shares().filter(models.Share.id == share_id).update(
                {models.Share.is_revoked: True},
                synchronize_session=False,
            )
            self.db.commit()

    def register_failed_password(self, share_id: str, max_attempts: int, lock_until: datetime) -> int:
        with self._guard("register_failed_password"):
            self._shares().filter(models.Share.id == share_id).update(
                {models.Share.failed_password_attempts: models.Share.failed_password_attempts + 1},
                synchronize_session=False,
            )
            self._shares().filter(
                models.Share.id == share_id,
                models.Share.failed_password_attempts >= max_attempts,
            ).update(
                {
                    models.Share.password_locked_until: lock_until,
                    models.Share.failed_password_attempts: 0,
                },
                synchronize_session=False,
            )
            self.db.commit()
            attempts = self.db.query(models.Share.failed_password_attempts).filter(
                models.Share.id == share_id
            ).scalar()
            return attempts or 0

    def reset_failed_passwords(self, share_id: str) -> None:
        with self._guard("reset_failed_passwords"):
            self._shares().filter(
                models.Share.id == share_id,
                models.Share.failed_password_attempts > 0,
            ).update(
                {models.Share.failed_password_attempts: 0},
                synchronize_session=False,
            )
            self.db.commit()

    def append_access_log(self, entry: AccessLogEntry) -> None:
        with self._guard("append_access_log"):
            self.db.add(models.AccessLog(
                certificate_id=entry.certificate_id,
                access_type=entry.access_type,
                access_method=entry.access_method,
                share_id=entry.share_id,
                recipient_email=entry.recipient_email,
                user_agent=entry.user_agent,
                ip_address=entry.ip_address,
                timestamp=entry.timestamp,
            ))
            self.db.commit()

    def list_access_logs(self, share_id=None, certificate_ids=None, since=None) -> List[AccessLogEntry]:
        with self._guard("list_access_logs"):
            query = self.db.query(models.AccessLog)
            if share_id is not None:
                query = query.filter(models.AccessLog.share_id == share_id)
            if certificate_ids is not None:
                query = query.filter(models.AccessLog.certificate_id.in_(list(certificate_ids)))
            if since is not None:
                query = query.filter(models.AccessLog.timestamp >= since)
            rows = query.order_by(models.AccessLog.timestamp.desc(), models.AccessLog.id.desc()).all()
            return [_log_to_entry(r) for r in rows]


# ─────────────────────────────────────────────────────────────
# In-memory backend
# ─────────────────────────────────────────────────────────────

class InMemoryShareStore(ShareStore):
    """Process-local store. Nothing here survives a restart."""

    durable = False

    def __init__(self):
        self._lock = threading.Lock()
        self._shares = {}
        self._ids_by_token = {}
        self._logs = []

    def clear(self) -> None:
        with self._lock:
            self._shares.clear()
            self._ids_by_token.clear()
            self._logs.clear()

    def _update(self, share_id: str, **changes) -> None:
        current = self._shares.get(share_id)
        if current is not None:
            self._shares[share_id] = dataclasses.replace(current, **changes)

    def insert_share(self, record: ShareRecord) -> None:
        with self._lock:
            if record.token in self._ids_by_token:
                raise DuplicateTokenError("share token already exists")
            if record.id in self._shares:
                raise PersistenceError("share id already exists")
            self._shares[record.id] = record
            self._ids_by_token[record.token] = record.id

    def get_by_token(self, token: str) -> Optional[ShareRecord]:
        with self._lock:
            share_id = self._ids_by_token.get(token)
            return self._shares.get(share_id) if share_id else None

    def get_by_id(self, share_id: str) -> Optional[ShareRecord]:
        with self._lock:
            return self._shares.get(share_id)

    def list_by_owner(self, owner_id: int) -> List[ShareRecord]:
        with self._lock:
            owned = [s for s in self._shares.values() if s.owner_id == owner_id]
        return sorted(owned, key=lambda s: s.created_at, reverse=True)

    def increment_download_count(self, share_id: str) -> bool:
        with self._lock:
            share = self._shares.get(share_id)
            if share is None or share.is_revoked:
                return False
            if share.max_downloads is not None and share.download_count >= share.max_downloads:
                return False
            self._update(share_id, download_count=share.download_count + 1)
            return True

    def increment_view_count(self, share_id: str) -> None:
        with self._lock:
            share = self._shares.get(share_id)
            if share is not None:
                self._update(share_id, view_count=share.view_count + 1)

    def revoke(self, share_id: str) -> None:
        with self._lock:
            self._update(share_id, is_revoked=True)

    def register_failed_password(self, share_id: str, max_attempts: int, lock_until: datetime) -> int:
        with self._lock:
            share = self._shares.get(share_id)
            if share is None:
                return 0
            attempts = share.failed_password_attempts + 1
            if attempts >= max_attempts:
                self._update(share_id, failed_password_attempts=0, password_locked_until=lock_until)
                return 0
            self._update(share_id, failed_password_attempts=attempts)
            return attempts

    def reset_failed_passwords(self, share_id: str) -> None:
        with self._lock:
            self._update(share_id, failed_password_attempts=0)

    def append_access_log(self, entry: AccessLogEntry) -> None:
        with self._lock:
            self._logs.append(dataclasses.replace(entry, id=len(self._logs) + 1))

    def list_access_logs(self, share_id=None, certificate_ids=None, since=None) -> List[AccessLogEntry]:
        with self._lock:
            logs = list(self._logs)
        if share_id is not None:
            logs = [e for e in logs if e.share_id == share_id]
        if certificate_ids is not None:
            wanted = set(certificate_ids)
            logs = [e for e in logs if e.certificate_id in wanted]
        if since is not None:
            logs = [e for e in logs if e.timestamp >= since]
        return sorted(logs, key=lambda e: (e.timestamp, e.id), reverse=True)


# Singleton: demo-mode store and the ephemeral fallback for unsynced shares
memory_store = InMemoryShareStore()
