"""
access_recorder.py: Appends access events and moves the share counters.

Logging is best-effort: a failed log append or view counter update is
reported to the log and swallowed so the recipient still gets the
certificate. The download counter is not: a download goes through only once
the store has claimed a slot under the cap, and a store fault on that claim
propagates as PersistenceError.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from errors import PersistenceError
from share_store import AccessLogEntry, ShareStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessRecorder:

    def __init__(self, store: ShareStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.clock = clock

    def record_access(
        self,
        share_id: Optional[str],
        certificate_id: str,
        access_type: str,
        access_method: str,
        metadata: Optional[dict] = None,
    ) -> bool:
        """Log one access event and bump the matching share counter.

        Returns False only when a download was refused because the share's
        download cap was already reached (no log entry is written then).
        Raises PersistenceError when the download slot cannot be claimed.
        """
        metadata = metadata or {}
        entry = AccessLogEntry(
            certificate_id=certificate_id,
            access_type=access_type,
            access_method=access_method,
            share_id=share_id,
            recipient_email=metadata.get("recipient_email"),
            user_agent=metadata.get("user_agent"),
            ip_address=metadata.get("ip_address"),
            timestamp=self.clock(),
        )

        if share_id is not None and access_type == "download":
            if not self.store.increment_download_count(share_id):
                logger.info(f"Download refused: share={share_id} cap reached")
                return False
        elif share_id is not None and access_type == "view":
            try:
                self.store.increment_view_count(share_id)
            except PersistenceError as e:
                logger.warning(f"View counter update failed for share={share_id}: {e}")

        try:
            self.store.append_access_log(entry)
        except PersistenceError as e:
            logger.warning(
                f"Access log write failed: share={share_id} certificate={certificate_id} "
                f"type={access_type}: {e}"
            )
        return True
