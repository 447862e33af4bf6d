import hashlib
import logging
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


def _entry_hash(entry_id: str, user: str, action: str, share_id: Optional[str],
                meta_data: Optional[str], ip_address: Optional[str], previous_hash: str) -> str:
    record = "|".join([entry_id, user, action, share_id or "", meta_data or "", ip_address or "", previous_hash])
    return hashlib.sha256(record.encode()).hexdigest()


def create_audit_entry(
    db: Session,
    action: str,
    user: str = "system",
    share_id: str = None,
    meta_data: str = None,
    ip_address: str = None,
):
    """Append an owner/auth event to the hash chain. Audit writes never fail the request."""
    try:
        last_log = db.query(models.AuditLog).order_by(models.AuditLog.id.desc()).first()
        previous_hash = last_log.current_hash if last_log else GENESIS_HASH

        entry_id = uuid.uuid4().hex
        current_hash = _entry_hash(entry_id, user, action, share_id, meta_data, ip_address, previous_hash)

        db.add(models.AuditLog(
            entry_id=entry_id,
            user=user,
            action=action,
            share_id=share_id,
            meta_data=meta_data,
            ip_address=ip_address,
            previous_hash=previous_hash,
            current_hash=current_hash,
        ))
        db.commit()
        return current_hash
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Audit write failed for action={action}: {e}")
        return None


def verify_audit_chain(db: Session) -> dict:
    """Walk the chain oldest first; every link and every entry digest must match."""
    logs = db.query(models.AuditLog).order_by(models.AuditLog.id.asc()).all()
    if not logs:
        return {"valid": True, "entries_checked": 0, "message": "No logs to verify"}

    prev = GENESIS_HASH
    for log in logs:
        expected = _entry_hash(log.entry_id, log.user, log.action, log.share_id,
                               log.meta_data, log.ip_address, prev)
        if log.previous_hash != prev or log.current_hash != expected:
            logger.error(f"Audit chain broken at entry id={log.id}")
            return {
                "valid": False,
                "entries_checked": len(logs),
                "broken_at_entry_id": log.id,
                "message": "Chain integrity violation detected",
            }
        prev = log.current_hash

    return {
        "valid": True,
        "entries_checked": len(logs),
        "message": "Audit chain integrity verified",
    }
