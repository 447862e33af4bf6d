from sqlalchemy import Column, Integer, String, DateTime, Date, Text, Boolean, ForeignKey, JSON
from sqlalchemy.sql import func
from database import Base


# ─────────────────────────────────────────────────────────────
# User Model (certificate owner)
# ─────────────────────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True)
    password_hash = Column(String)
    email = Column(String, unique=True)
    full_name = Column(String, nullable=True)
    position = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    failed_logins = Column(Integer, default=0)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ─────────────────────────────────────────────────────────────
# Certificate metadata (file content lives in the external blob store)
# ─────────────────────────────────────────────────────────────
class Certificate(Base):
    __tablename__ = "certificates"

    id = Column(String, primary_key=True)
    owner_id = Column(Integer, ForeignKey("users.id"), index=True)
    title = Column(String, nullable=False)
    type = Column(String, nullable=True)
    issuer = Column(String, nullable=True)
    cert_number = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    completion_date = Column(Date, nullable=True)
    expiry_date = Column(Date, nullable=True, index=True)
    file_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# ─────────────────────────────────────────────────────────────
# Share link: never physically deleted
# ─────────────────────────────────────────────────────────────
class Share(Base):
    __tablename__ = "link_shares"

    id = Column(String, primary_key=True)
    token = Column(String, unique=True, index=True, nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    certificate_ids = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_password_protected = Column(Boolean, default=False, nullable=False)
    password_hash = Column(String, nullable=True)
    max_downloads = Column(Integer, nullable=True)
    download_count = Column(Integer, default=0, nullable=False)
    view_count = Column(Integer, default=0, nullable=False)
    is_revoked = Column(Boolean, default=False, nullable=False)
    failed_password_attempts = Column(Integer, default=0, nullable=False)
    password_locked_until = Column(DateTime(timezone=True), nullable=True)


# ─────────────────────────────────────────────────────────────
# Access Log: append-only
# ─────────────────────────────────────────────────────────────
class AccessLog(Base):
    __tablename__ = "access_logs"

    id = Column(Integer, primary_key=True)
    certificate_id = Column(String, index=True, nullable=False)
    access_type = Column(String, nullable=False)     # view | download | email | print
    access_method = Column(String, nullable=False)   # link | email | direct | qrcode
    share_id = Column(String, ForeignKey("link_shares.id"), index=True, nullable=True)
    recipient_email = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)


# ─────────────────────────────────────────────────────────────
# Audit Log: hash-chained owner/auth events
# ─────────────────────────────────────────────────────────────
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    entry_id = Column(String, unique=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now())
    user = Column(String)
    action = Column(String)
    share_id = Column(String, nullable=True)
    meta_data = Column(Text, nullable=True)
    ip_address = Column(String, nullable=True)
    previous_hash = Column(String)
    current_hash = Column(String, unique=True)
