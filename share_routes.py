# share_routes.py

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import models
import schemas
from audit import create_audit_entry
from auth import get_client_ip, get_current_user
from database import get_db
from email_client import EmailClient, EmailDeliveryError, get_email_client, render_share_email
from share_service import (
    REASON_DOWNLOAD_LIMIT,
    REASON_EXPIRED,
    REASON_INVALID_PASSWORD,
    REASON_NOT_FOUND,
    REASON_REVOKED,
    REASON_TOO_MANY_ATTEMPTS,
    REASON_UNAVAILABLE,
    STATUS_PASSWORD_REQUIRED,
    STATUS_REJECTED,
    ShareDecision,
    ShareService,
    build_share_service,
)
from share_store import ShareRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shares", tags=["Sharing"])
public_router = APIRouter(prefix="/share", tags=["Public Share"])

REJECTION_STATUS_CODES = {
    REASON_NOT_FOUND: 404,
    REASON_UNAVAILABLE: 404,
    REASON_REVOKED: 410,
    REASON_EXPIRED: 410,
    REASON_DOWNLOAD_LIMIT: 410,
    REASON_INVALID_PASSWORD: 403,
    REASON_TOO_MANY_ATTEMPTS: 429,
}


def get_share_service(db: Session = Depends(get_db)) -> ShareService:
    return build_share_service(db)


def _request_metadata(request: Request) -> dict:
    return {
        "user_agent": request.headers.get("User-Agent"),
        "ip_address": get_client_ip(request),
    }


def _share_out(service: ShareService, share: ShareRecord) -> schemas.ShareOut:
    return schemas.ShareOut(
        id=share.id,
        share_url=service.share_url(share),
        certificate_ids=list(share.certificate_ids),
        created_at=share.created_at,
        expires_at=share.expires_at,
        is_password_protected=share.is_password_protected,
        max_downloads=share.max_downloads,
        download_count=share.download_count,
        view_count=share.view_count,
        is_revoked=share.is_revoked,
    )


def _resolution_response(decision: ShareDecision) -> JSONResponse:
    body = schemas.ShareResolution(status=decision.status)
    status_code = 200
    if decision.status == STATUS_REJECTED:
        body.reason = decision.reason
        status_code = REJECTION_STATUS_CODES.get(decision.reason, 404)
    elif decision.status != STATUS_PASSWORD_REQUIRED:
        body.certificates = [schemas.CertificateOut(**c) for c in decision.certificates]
        body.grant = decision.grant
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude_none=True))


# ─── OWNER: CREATE / LIST / REVOKE ─────────────────────

@router.post("", response_model=schemas.CreateShareResponse, status_code=201)
def create_share(
    req: schemas.CreateShareRequest,
    request: Request,
    db: Session = Depends(get_db),
    service: ShareService = Depends(get_share_service),
    current_user: models.User = Depends(get_current_user),
):
    try:
        created = service.create_share(
            owner_id=current_user.id,
            certificate_ids=req.certificate_ids,
            expiry_days=req.expiry_days,
            password=req.password,
            max_downloads=req.max_downloads,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    create_audit_entry(db, "SHARE_CREATED", user=current_user.username,
                       share_id=created.share.id, ip_address=get_client_ip(request),
                       meta_data=f"certificates={len(created.share.certificate_ids)},synced={created.synced}")

    return schemas.CreateShareResponse(
        share_id=created.share.id,
        share_url=created.url,
        token=created.share.token,
        expires_at=created.share.expires_at,
        synced=created.synced,
    )


@router.get("", response_model=List[schemas.ShareOut])
def list_shares(
    service: ShareService = Depends(get_share_service),
    current_user: models.User = Depends(get_current_user),
):
    return [_share_out(service, s) for s in service.list_shares(current_user.id)]


@router.post("/{share_id}/revoke", response_model=schemas.StatusResponse)
def revoke_share(
    share_id: str,
    request: Request,
    db: Session = Depends(get_db),
    service: ShareService = Depends(get_share_service),
    current_user: models.User = Depends(get_current_user),
):
    service.revoke(share_id, current_user.id)
    create_audit_entry(db, "SHARE_REVOKED", user=current_user.username,
                       share_id=share_id, ip_address=get_client_ip(request))
    return {"status": "ok"}


@router.get("/{share_id}/access-logs", response_model=List[schemas.AccessLogOut])
def share_access_logs(
    share_id: str,
    service: ShareService = Depends(get_share_service),
    current_user: models.User = Depends(get_current_user),
):
    return [
        schemas.AccessLogOut(
            certificate_id=e.certificate_id,
            access_type=e.access_type,
            access_method=e.access_method,
            share_id=e.share_id,
            recipient_email=e.recipient_email,
            user_agent=e.user_agent,
            timestamp=e.timestamp,
        )
        for e in service.access_logs(share_id, current_user.id)
    ]


@router.post("/{share_id}/email", response_model=schemas.StatusResponse)
def email_share(
    share_id: str,
    req: schemas.EmailShareRequest,
    request: Request,
    db: Session = Depends(get_db),
    service: ShareService = Depends(get_share_service),
    mailer: EmailClient = Depends(get_email_client),
    current_user: models.User = Depends(get_current_user),
):
    share = service.get_owned_share(share_id, current_user.id)
    decision = service.validate(share.token, password_verified=True)
    if not decision.accepted:
        raise HTTPException(status_code=409, detail=f"Share is no longer active ({decision.reason})")

    certificates = service.certificates.get_certificates_by_ids(share.certificate_ids)
    email = render_share_email(
        sender_name=current_user.full_name or current_user.username,
        certificate_titles=[c["title"] for c in certificates],
        share_url=service.share_url(share),
        message=req.message,
        expires_at=share.expires_at.isoformat() if share.expires_at else None,
    )
    recipients = [str(r) for r in req.recipients]
    try:
        mailer.send(recipients, email["subject"], email["text"])
    except EmailDeliveryError as e:
        raise HTTPException(status_code=502, detail=str(e))

    service.record_email(share, recipients, _request_metadata(request))
    create_audit_entry(db, "SHARE_EMAILED", user=current_user.username,
                       share_id=share_id, ip_address=get_client_ip(request),
                       meta_data=f"recipients={len(recipients)}")
    return {"status": "ok"}


# ─── PUBLIC: RESOLVE / PASSWORD / DOWNLOAD / PRINT ─────

@public_router.get("/{token}", response_model=schemas.ShareResolution)
def resolve_share(
    token: str,
    request: Request,
    grant: Optional[str] = Header(None, alias="X-Share-Grant"),
    service: ShareService = Depends(get_share_service),
):
    return _resolution_response(service.resolve(token, grant=grant, metadata=_request_metadata(request)))


@public_router.post("/{token}/password", response_model=schemas.ShareResolution)
def submit_share_password(
    token: str,
    req: schemas.SharePasswordRequest,
    request: Request,
    service: ShareService = Depends(get_share_service),
):
    return _resolution_response(service.submit_password(token, req.password, metadata=_request_metadata(request)))


@public_router.post("/{token}/certificates/{certificate_id}/download", response_model=schemas.ShareResolution)
def download_shared_certificate(
    token: str,
    certificate_id: str,
    request: Request,
    grant: Optional[str] = Header(None, alias="X-Share-Grant"),
    service: ShareService = Depends(get_share_service),
):
    decision = service.access_certificate(token, certificate_id, "download",
                                          grant=grant, metadata=_request_metadata(request))
    return _resolution_response(decision)


@public_router.post("/{token}/certificates/{certificate_id}/print", response_model=schemas.ShareResolution)
def print_shared_certificate(
    token: str,
    certificate_id: str,
    request: Request,
    grant: Optional[str] = Header(None, alias="X-Share-Grant"),
    service: ShareService = Depends(get_share_service),
):
    decision = service.access_certificate(token, certificate_id, "print",
                                          grant=grant, metadata=_request_metadata(request))
    return _resolution_response(decision)
