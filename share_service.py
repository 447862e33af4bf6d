"""
share_service.py: Secure share-link engine.

    create_share          Token Generator: fresh token, hashed password, persisted record
    validate              Share Validator: revoked → expired → download cap → password gate
    verify_share_access   password check for protected shares, with per-share lockout
    revoke                Share Revoker: one-way, idempotent

Validation outcomes are returned as ShareDecision values. Only infrastructure
failures (PersistenceError) and owner-side lookups (NotFound) raise.
"""
import logging
import os
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Sequence

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from access_recorder import AccessRecorder
from auth import create_share_grant, verify_share_grant
from certificate_repo import CertificateRepository, SqlCertificateRepository
from errors import DuplicateTokenError, NotFound, PersistenceError
from secure_share import build_share_url, compute_expiry, generate_share_token
from security import hash_secret, verify_secret
from share_store import ShareRecord, ShareStore, SqlShareStore, as_utc, memory_store

load_dotenv()

logger = logging.getLogger(__name__)

SHARE_STORE_BACKEND = os.getenv("SHARE_STORE_BACKEND", "sql").lower()
SHARE_EPHEMERAL_FALLBACK = os.getenv("SHARE_EPHEMERAL_FALLBACK", "false").lower() == "true"
SHARE_DISCLOSE_REJECTION_REASON = os.getenv("SHARE_DISCLOSE_REJECTION_REASON", "true").lower() == "true"
SHARE_TOKEN_RETRIES = int(os.getenv("SHARE_TOKEN_RETRIES", "3"))
MAX_FAILED_SHARE_PASSWORDS = int(os.getenv("MAX_FAILED_SHARE_PASSWORDS", "5"))
SHARE_LOCKOUT_MINUTES = int(os.getenv("SHARE_LOCKOUT_MINUTES", "15"))

STATUS_OK = "ok"
STATUS_PASSWORD_REQUIRED = "password_required"
STATUS_REJECTED = "rejected"

REASON_NOT_FOUND = "not_found"
REASON_REVOKED = "revoked"
REASON_EXPIRED = "expired"
REASON_DOWNLOAD_LIMIT = "download_limit"
REASON_INVALID_PASSWORD = "invalid_password"
REASON_TOO_MANY_ATTEMPTS = "too_many_attempts"
REASON_UNAVAILABLE = "unavailable"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ShareDecision:
    status: str
    reason: Optional[str] = None
    share: Optional[ShareRecord] = None
    certificates: tuple = ()
    grant: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status == STATUS_OK

    @classmethod
    def reject(cls, reason: str, share: Optional[ShareRecord] = None) -> "ShareDecision":
        return cls(status=STATUS_REJECTED, reason=reason, share=share)


@dataclass(frozen=True)
class CreatedShare:
    share: ShareRecord
    url: str
    synced: bool = True


@dataclass
class AnalyticsSummary:
    views: int = 0
    downloads: int = 0
    emails: int = 0
    prints: int = 0
    most_viewed_certificate_id: Optional[str] = None
    most_downloaded_certificate_id: Optional[str] = None
    active_shares: int = 0
    revoked_shares: int = 0
    access_by_method: dict = field(default_factory=dict)


class ShareService:

    def __init__(
        self,
        store: ShareStore,
        certificates: CertificateRepository,
        fallback_store: Optional[ShareStore] = None,
        clock: Callable[[], datetime] = _utcnow,
        base_url: Optional[str] = None,
        disclose_reasons: bool = SHARE_DISCLOSE_REJECTION_REASON,
        max_failed_passwords: int = MAX_FAILED_SHARE_PASSWORDS,
        lockout_minutes: int = SHARE_LOCKOUT_MINUTES,
        token_retries: int = SHARE_TOKEN_RETRIES,
    ):
        self.store = store
        self.certificates = certificates
        self.fallback_store = fallback_store if fallback_store is not store else None
        self.clock = clock
        self.base_url = base_url
        self.disclose_reasons = disclose_reasons
        self.max_failed_passwords = max_failed_passwords
        self.lockout_minutes = lockout_minutes
        self.token_retries = max(1, token_retries)
        self.recorder = AccessRecorder(store, clock)

    # ─── lookup helpers ──────────────────────────────────

    def _stores(self) -> List[ShareStore]:
        return [self.store] + ([self.fallback_store] if self.fallback_store else [])

    def _locate_by_token(self, token: str):
        for store in self._stores():
            record = store.get_by_token(token)
            if record is not None:
                return store, record
        return None, None

    def _locate_by_id(self, share_id: str):
        for store in self._stores():
            record = store.get_by_id(share_id)
            if record is not None:
                return store, record
        return None, None

    def _recorder_for(self, store: ShareStore) -> AccessRecorder:
        if store is self.store:
            return self.recorder
        return AccessRecorder(store, self.clock)

    def share_url(self, share: ShareRecord) -> str:
        return build_share_url(share.token, self.base_url)

    # ─── Token Generator ─────────────────────────────────

    def create_share(
        self,
        owner_id: int,
        certificate_ids: Sequence[str],
        expiry_days: int,
        password: Optional[str] = None,
        max_downloads: Optional[int] = None,
    ) -> CreatedShare:
        ordered_ids = tuple(dict.fromkeys(certificate_ids or ()))
        if not ordered_ids:
            raise ValueError("at least one certificate is required")
        if isinstance(expiry_days, bool) or not isinstance(expiry_days, int) or expiry_days < 0:
            raise ValueError("expiry_days must be an integer >= 0")
        if max_downloads is not None and max_downloads < 1:
            raise ValueError("max_downloads must be a positive integer")
        if password is not None and not password.strip():
            raise ValueError("password must not be blank")

        owned = self.certificates.get_owned_ids(owner_id, ordered_ids)
        if len(owned) != len(ordered_ids):
            raise NotFound("one or more certificates not found")

        password_hash = hash_secret(password) if password is not None else None

        created_at = self.clock()
        expires_at = compute_expiry(created_at, expiry_days)
        share_id = str(uuid.uuid4())
        record = None
        for attempt in range(1, self.token_retries + 1):
            record = ShareRecord(
                id=share_id,
                token=generate_share_token(),
                owner_id=owner_id,
                certificate_ids=ordered_ids,
                created_at=created_at,
                expires_at=expires_at,
                is_password_protected=password_hash is not None,
                password_hash=password_hash,
                max_downloads=max_downloads,
            )
            try:
                self.store.insert_share(record)
                break
            except DuplicateTokenError:
                logger.warning(f"Share token collision on attempt {attempt}; regenerating")
            except PersistenceError:
                if self.fallback_store is None:
                    raise
                logger.error(f"Share {share_id} could not be persisted; keeping it in memory (unsynced)")
                self.fallback_store.insert_share(record)
                return CreatedShare(share=record, url=self.share_url(record), synced=False)
        else:
            raise PersistenceError("could not allocate a unique share token")

        logger.info(
            f"Share created: id={share_id} owner={owner_id} certificates={len(ordered_ids)} "
            f"expires_at={record.expires_at} protected={record.is_password_protected} "
            f"max_downloads={max_downloads}"
        )
        return CreatedShare(share=record, url=self.share_url(record), synced=self.store.durable)

    # ─── Share Validator ─────────────────────────────────

    def _decide(self, share: Optional[ShareRecord], password_verified: bool) -> ShareDecision:
        if share is None:
            return ShareDecision.reject(REASON_NOT_FOUND)
        if share.is_revoked:
            return ShareDecision.reject(REASON_REVOKED, share)
        if share.expires_at is not None and self.clock() > as_utc(share.expires_at):
            return ShareDecision.reject(REASON_EXPIRED, share)
        if share.max_downloads is not None and share.download_count >= share.max_downloads:
            return ShareDecision.reject(REASON_DOWNLOAD_LIMIT, share)
        if share.is_password_protected and not password_verified:
            return ShareDecision(status=STATUS_PASSWORD_REQUIRED, share=share)
        return ShareDecision(status=STATUS_OK, share=share)

    def validate(self, token: str, password_verified: bool = False) -> ShareDecision:
        """Evaluate the share's stored state fresh; read-only."""
        _, share = self._locate_by_token(token)
        decision = self._decide(share, password_verified)
        if decision.status == STATUS_REJECTED:
            logger.info(f"Share access rejected: reason={decision.reason}")
        return decision

    def verify_share_access(self, token: str, password: str) -> ShareDecision:
        store, share = self._locate_by_token(token)
        decision = self._decide(share, password_verified=True)
        if not decision.accepted or not share.is_password_protected:
            return decision

        now = self.clock()
        if share.password_locked_until is not None and now < as_utc(share.password_locked_until):
            logger.info(f"Share password path locked: share={share.id}")
            return ShareDecision.reject(REASON_TOO_MANY_ATTEMPTS, share)

        if verify_secret(password or "", share.password_hash):
            if share.failed_password_attempts:
                store.reset_failed_passwords(share.id)
            return decision

        remaining = store.register_failed_password(
            share.id,
            self.max_failed_passwords,
            now + timedelta(minutes=self.lockout_minutes),
        )
        logger.info(f"Wrong share password: share={share.id} attempts={remaining}")
        return ShareDecision.reject(REASON_INVALID_PASSWORD, share)

    # ─── Share Revoker ───────────────────────────────────

    def get_owned_share(self, share_id: str, owner_id: int) -> ShareRecord:
        _, share = self._locate_by_id(share_id)
        if share is None or share.owner_id != owner_id:
            raise NotFound("share not found")
        return share

    def revoke(self, share_id: str, owner_id: int) -> None:
        """Idempotent: revoking a revoked share is a no-op."""
        store, share = self._locate_by_id(share_id)
        if share is None or share.owner_id != owner_id:
            raise NotFound("share not found")
        if share.is_revoked:
            return
        store.revoke(share_id)
        logger.info(f"Share revoked: id={share_id} owner={owner_id}")

    def list_shares(self, owner_id: int) -> List[ShareRecord]:
        shares = []
        for store in self._stores():
            shares.extend(store.list_by_owner(owner_id))
        return sorted(shares, key=lambda s: s.created_at, reverse=True)

    def access_logs(self, share_id: str, owner_id: int):
        store, share = self._locate_by_id(share_id)
        if share is None or share.owner_id != owner_id:
            raise NotFound("share not found")
        return store.list_access_logs(share_id=share_id)

    # ─── Public share flow ───────────────────────────────

    def _public(self, decision: ShareDecision) -> ShareDecision:
        if decision.status == STATUS_REJECTED and not self.disclose_reasons:
            return ShareDecision.reject(REASON_UNAVAILABLE)
        return decision

    def _deliver(self, token: str, decision: ShareDecision, metadata: Optional[dict], grant=None) -> ShareDecision:
        share = decision.share
        store, _ = self._locate_by_token(token)
        certificates = tuple(self.certificates.get_certificates_by_ids(share.certificate_ids))
        recorder = self._recorder_for(store)
        for cert in certificates:
            recorder.record_access(share.id, cert["id"], "view", "link", metadata)
        return ShareDecision(status=STATUS_OK, share=share, certificates=certificates, grant=grant)

    def resolve(self, token: str, grant: Optional[str] = None, metadata: Optional[dict] = None) -> ShareDecision:
        """Public link resolution: certificates, a password challenge, or a rejection."""
        decision = self.validate(token, password_verified=verify_share_grant(grant, token))
        if not decision.accepted:
            return self._public(decision)
        return self._deliver(token, decision, metadata)

    def submit_password(self, token: str, password: str, metadata: Optional[dict] = None) -> ShareDecision:
        decision = self.verify_share_access(token, password)
        if not decision.accepted:
            return self._public(decision)
        grant = create_share_grant(token) if decision.share.is_password_protected else None
        return self._deliver(token, decision, metadata, grant=grant)

    def access_certificate(
        self,
        token: str,
        certificate_id: str,
        access_type: str,
        grant: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ShareDecision:
        """Download or print one certificate of a share."""
        if access_type not in ("download", "print"):
            raise ValueError(f"unsupported access type {access_type!r}")

        decision = self.validate(token, password_verified=verify_share_grant(grant, token))
        if not decision.accepted:
            return self._public(decision)

        share = decision.share
        if certificate_id not in share.certificate_ids:
            return self._public(ShareDecision.reject(REASON_NOT_FOUND, share))
        certificates = tuple(self.certificates.get_certificates_by_ids([certificate_id]))
        if not certificates:
            return self._public(ShareDecision.reject(REASON_NOT_FOUND, share))

        store, _ = self._locate_by_token(token)
        if not self._recorder_for(store).record_access(share.id, certificate_id, access_type, "link", metadata):
            logger.info(f"Share access rejected: reason={REASON_DOWNLOAD_LIMIT}")
            return self._public(ShareDecision.reject(REASON_DOWNLOAD_LIMIT, share))
        return ShareDecision(status=STATUS_OK, share=share, certificates=certificates)

    # ─── Email / direct events ───────────────────────────

    def record_email(self, share: ShareRecord, recipients: Iterable[str], metadata: Optional[dict] = None) -> None:
        store, _ = self._locate_by_id(share.id)
        recorder = self._recorder_for(store or self.store)
        for recipient in recipients:
            for certificate_id in share.certificate_ids:
                recorder.record_access(
                    share.id, certificate_id, "email", "email",
                    dict(metadata or {}, recipient_email=recipient),
                )

    def record_direct(self, certificate_id: str, access_type: str, access_method: str,
                      metadata: Optional[dict] = None) -> None:
        """Owner-side event that did not go through a share link."""
        self.recorder.record_access(None, certificate_id, access_type, access_method, metadata)

    # ─── Analytics ───────────────────────────────────────

    def analytics_summary(self, owner_id: int, certificate_ids: Sequence[str], since: datetime) -> AnalyticsSummary:
        logs = []
        if certificate_ids:
            for store in self._stores():
                logs.extend(store.list_access_logs(certificate_ids=list(certificate_ids), since=since))

        by_type = Counter(e.access_type for e in logs)
        views = Counter(e.certificate_id for e in logs if e.access_type == "view")
        downloads = Counter(e.certificate_id for e in logs if e.access_type == "download")
        shares = self.list_shares(owner_id)

        return AnalyticsSummary(
            views=by_type["view"],
            downloads=by_type["download"],
            emails=by_type["email"],
            prints=by_type["print"],
            most_viewed_certificate_id=views.most_common(1)[0][0] if views else None,
            most_downloaded_certificate_id=downloads.most_common(1)[0][0] if downloads else None,
            active_shares=sum(1 for s in shares if self._decide(s, True).accepted),
            revoked_shares=sum(1 for s in shares if s.is_revoked),
            access_by_method=dict(Counter(e.access_method for e in logs)),
        )


def build_share_service(db: Session) -> ShareService:
    """Wire the service from configuration. ``memory`` backend is the explicit demo mode."""
    if SHARE_STORE_BACKEND == "memory":
        store = memory_store
    else:
        store = SqlShareStore(db)
    fallback = memory_store if SHARE_EPHEMERAL_FALLBACK and store is not memory_store else None
    return ShareService(store, SqlCertificateRepository(db), fallback_store=fallback)
