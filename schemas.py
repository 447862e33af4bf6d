from pydantic import BaseModel, EmailStr, Field
from typing import List, Optional
from datetime import date, datetime
from secure_share import MAX_EXPIRY_DAYS


class UserCreate(BaseModel):
    username: str
    password: str
    email: EmailStr
    full_name: Optional[str] = None
    position: Optional[str] = None


class UserLogin(BaseModel):
    username: str
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str


# ─── Certificates ─────────────────────────────────────────────

class CertificateCreate(BaseModel):
    title: str = Field(..., min_length=1)
    type: Optional[str] = None
    issuer: Optional[str] = None
    cert_number: Optional[str] = None
    description: Optional[str] = None
    completion_date: Optional[date] = None
    expiry_date: Optional[date] = None
    file_url: Optional[str] = None


class CertificateOut(BaseModel):
    id: str
    title: str
    type: Optional[str] = None
    issuer: Optional[str] = None
    cert_number: Optional[str] = None
    description: Optional[str] = None
    completion_date: Optional[str] = None
    expiry_date: Optional[str] = None
    status: str
    file_url: Optional[str] = None


class DirectAccessRequest(BaseModel):
    access_type: str = Field(..., pattern="^(view|download|print)$")
    access_method: str = Field("direct", pattern="^(direct|qrcode)$")


# ─── Shares (owner) ───────────────────────────────────────────

class CreateShareRequest(BaseModel):
    certificate_ids: List[str] = Field(..., min_length=1)
    expiry_days: int = Field(7, ge=0, le=MAX_EXPIRY_DAYS)
    password: Optional[str] = Field(None, min_length=1)
    max_downloads: Optional[int] = Field(None, ge=1)


class CreateShareResponse(BaseModel):
    share_id: str
    share_url: str
    token: str
    expires_at: Optional[datetime] = None
    synced: bool


class ShareOut(BaseModel):
    id: str
    share_url: str
    certificate_ids: List[str]
    created_at: datetime
    expires_at: Optional[datetime] = None
    is_password_protected: bool
    max_downloads: Optional[int] = None
    download_count: int
    view_count: int
    is_revoked: bool


class StatusResponse(BaseModel):
    status: str


class EmailShareRequest(BaseModel):
    recipients: List[EmailStr] = Field(..., min_length=1, max_length=10)
    message: Optional[str] = Field(None, max_length=1000)


class AccessLogOut(BaseModel):
    certificate_id: str
    access_type: str
    access_method: str
    share_id: Optional[str] = None
    recipient_email: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime


class AnalyticsSummaryOut(BaseModel):
    views: int
    downloads: int
    emails: int
    prints: int
    most_viewed_certificate_id: Optional[str] = None
    most_downloaded_certificate_id: Optional[str] = None
    active_shares: int
    revoked_shares: int
    access_by_method: dict


# ─── Shares (public) ──────────────────────────────────────────

class SharePasswordRequest(BaseModel):
    password: str


class ShareResolution(BaseModel):
    status: str                     # ok | password_required | rejected
    reason: Optional[str] = None
    certificates: Optional[List[CertificateOut]] = None
    grant: Optional[str] = None
