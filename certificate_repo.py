"""
certificate_repo.py: Certificate lookup collaborator for the share engine.

The engine only ever asks for certificates by id; how certificate files are
stored (external blob store, referenced by file_url) is not its concern.
"""
import abc
from datetime import date, timedelta
from typing import List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from errors import PersistenceError

EXPIRING_WINDOW_DAYS = 30


def certificate_status(expiry_date: Optional[date], today: Optional[date] = None) -> str:
    """valid | expiring | expired, derived from the certificate's own expiry date."""
    if expiry_date is None:
        return "valid"
    today = today or date.today()
    if expiry_date < today:
        return "expired"
    if expiry_date <= today + timedelta(days=EXPIRING_WINDOW_DAYS):
        return "expiring"
    return "valid"


def certificate_to_dict(cert: models.Certificate) -> dict:
    return {
        "id": cert.id,
        "title": cert.title,
        "type": cert.type,
        "issuer": cert.issuer,
        "cert_number": cert.cert_number,
        "description": cert.description,
        "completion_date": cert.completion_date.isoformat() if cert.completion_date else None,
        "expiry_date": cert.expiry_date.isoformat() if cert.expiry_date else None,
        "status": certificate_status(cert.expiry_date),
        "file_url": cert.file_url,
    }


class CertificateRepository(abc.ABC):

    @abc.abstractmethod
    def get_certificates_by_ids(self, ids: Sequence[str]) -> List[dict]:
        """Certificates in the order of ``ids``; unknown ids are skipped."""

    @abc.abstractmethod
    def get_owned_ids(self, owner_id: int, ids: Sequence[str]) -> List[str]:
        """The subset of ``ids`` that belongs to ``owner_id``."""


class SqlCertificateRepository(CertificateRepository):

    def __init__(self, db: Session):
        self.db = db

    def get_certificates_by_ids(self, ids: Sequence[str]) -> List[dict]:
        if not ids:
            return []
        try:
            rows = self.db.query(models.Certificate).filter(models.Certificate.id.in_(list(ids))).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("certificate lookup failed") from e
        by_id = {r.id: r for r in rows}
        return [certificate_to_dict(by_id[i]) for i in ids if i in by_id]

    def get_owned_ids(self, owner_id: int, ids: Sequence[str]) -> List[str]:
        if not ids:
            return []
        try:
            rows = self.db.query(models.Certificate.id).filter(
                models.Certificate.owner_id == owner_id,
                models.Certificate.id.in_(list(ids)),
            ).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("certificate lookup failed") from e
        owned = {r[0] for r in rows}
        return [i for i in ids if i in owned]
