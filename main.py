from fastapi import FastAPI, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from datetime import datetime, timedelta, timezone
import logging
import os
import uuid

import uvicorn

from database import Base, engine, get_db
import models, schemas
from errors import NotFound, PersistenceError
from security import hash_password, verify_password, validate_password_strength
from auth import create_access_token, get_current_user, get_client_ip
from audit import create_audit_entry, verify_audit_chain
from certificate_repo import certificate_to_dict
from share_routes import router as share_router, public_router as public_share_router, get_share_service
from share_service import ShareService, SHARE_STORE_BACKEND, SHARE_EPHEMERAL_FALLBACK

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ─── App created FIRST before any include_router ─────────────────────────────
app = FastAPI(
    title="Certificate Wallet API",
    description="Certificate wallet with secure, time-boxed share links",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── Register share routers ──────────────────────────────────────────────────
app.include_router(share_router)
app.include_router(public_share_router)

Base.metadata.create_all(bind=engine)

MAX_FAILED_LOGINS = 5
LOGIN_LOCKOUT_MINUTES = 15


# ─── Exception handlers ───────────────────────────────────────────────────────
# Store errors never reach the client; they get a generic retry message.

@app.exception_handler(PersistenceError)
async def persistence_exception_handler(request: Request, exc: PersistenceError):
    logger.error(f"Store unavailable on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Service temporarily unavailable, please try again"}
    )


@app.exception_handler(NotFound)
async def not_found_exception_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc) or "Not found"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ─── Health ──────────────────────────────────────────────────────────────────

@app.get("/health", tags=["System"])
def health():
    return {
        "status": "ok",
        "service": "certificate-wallet",
        "version": "1.0.0",
        "share_store": SHARE_STORE_BACKEND,
        "demo_mode": SHARE_STORE_BACKEND == "memory",
        "ephemeral_fallback": SHARE_EPHEMERAL_FALLBACK,
    }


# ─── Auth ─────────────────────────────────────────────────────────────────────

@app.post("/register", tags=["Auth"], status_code=201)
def register(user: schemas.UserCreate, request: Request, db: Session = Depends(get_db)):
    ok, problem = validate_password_strength(user.password)
    if not ok:
        raise HTTPException(status_code=422, detail=problem)
    if db.query(models.User).filter(models.User.username == user.username).first():
        raise HTTPException(status_code=400, detail="Username already taken")
    if db.query(models.User).filter(models.User.email == user.email).first():
        raise HTTPException(status_code=400, detail="Email already registered")

    db_user = models.User(
        username=user.username,
        password_hash=hash_password(user.password),
        email=user.email,
        full_name=user.full_name,
        position=user.position,
    )
    db.add(db_user)
    db.commit()

    create_audit_entry(db, "USER_REGISTERED", user=user.username, ip_address=get_client_ip(request))
    return {"message": "User registered successfully"}


@app.post("/login", response_model=schemas.Token, tags=["Auth"])
def login(user: schemas.UserLogin, request: Request, db: Session = Depends(get_db)):
    db_user = db.query(models.User).filter(models.User.username == user.username).first()
    now = datetime.now(timezone.utc)

    if db_user and db_user.locked_until:
        locked_until = db_user.locked_until.replace(tzinfo=db_user.locked_until.tzinfo or timezone.utc)
        if now < locked_until:
            raise HTTPException(status_code=423, detail="Account locked. Try again later.")

    if not db_user or not verify_password(user.password, db_user.password_hash):
        if db_user:
            db_user.failed_logins = (db_user.failed_logins or 0) + 1
            if db_user.failed_logins >= MAX_FAILED_LOGINS:
                db_user.locked_until = now + timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
            db.commit()
        create_audit_entry(db, "LOGIN_FAILED", user=user.username, ip_address=get_client_ip(request))
        raise HTTPException(status_code=401, detail="Invalid credentials")

    db_user.failed_logins = 0
    db_user.locked_until = None
    db.commit()

    token = create_access_token({"sub": db_user.username})
    create_audit_entry(db, "USER_LOGIN", user=user.username, ip_address=get_client_ip(request))
    return {"access_token": token, "token_type": "bearer"}


# ─── Certificates ────────────────────────────────────────────────────────────

@app.post("/certificates", response_model=schemas.CertificateOut, tags=["Certificates"], status_code=201)
def register_certificate(cert: schemas.CertificateCreate,
                         db: Session = Depends(get_db),
                         current_user: models.User = Depends(get_current_user)):
    db_cert = models.Certificate(id=str(uuid.uuid4()), owner_id=current_user.id, **cert.model_dump())
    db.add(db_cert)
    db.commit()
    return certificate_to_dict(db_cert)


@app.get("/certificates", response_model=list[schemas.CertificateOut], tags=["Certificates"])
def list_certificates(db: Session = Depends(get_db),
                      current_user: models.User = Depends(get_current_user)):
    certs = db.query(models.Certificate).filter(
        models.Certificate.owner_id == current_user.id
    ).order_by(models.Certificate.created_at.desc()).all()
    return [certificate_to_dict(c) for c in certs]


@app.post("/certificates/{certificate_id}/access", response_model=schemas.StatusResponse, tags=["Certificates"])
def record_certificate_access(certificate_id: str,
                              req: schemas.DirectAccessRequest,
                              request: Request,
                              db: Session = Depends(get_db),
                              service: ShareService = Depends(get_share_service),
                              current_user: models.User = Depends(get_current_user)):
    if not service.certificates.get_owned_ids(current_user.id, [certificate_id]):
        raise HTTPException(status_code=404, detail="Certificate not found")
    service.record_direct(certificate_id, req.access_type, req.access_method,
                          {"user_agent": request.headers.get("User-Agent"),
                           "ip_address": get_client_ip(request)})
    return {"status": "ok"}


# ─── Analytics ───────────────────────────────────────────────────────────────

@app.get("/analytics/summary", response_model=schemas.AnalyticsSummaryOut, tags=["Analytics"])
def analytics_summary(days: int = Query(30, ge=1, le=365),
                      db: Session = Depends(get_db),
                      service: ShareService = Depends(get_share_service),
                      current_user: models.User = Depends(get_current_user)):
    certificate_ids = [
        row[0] for row in db.query(models.Certificate.id).filter(
            models.Certificate.owner_id == current_user.id
        ).all()
    ]
    since = datetime.now(timezone.utc) - timedelta(days=days)
    summary = service.analytics_summary(current_user.id, certificate_ids, since)
    return schemas.AnalyticsSummaryOut(**vars(summary))


# ─── Audit ────────────────────────────────────────────────────────────────────

@app.get("/audit-logs", tags=["Audit"])
def get_audit_logs(db: Session = Depends(get_db),
                   current_user: models.User = Depends(get_current_user)):
    logs = db.query(models.AuditLog).filter(
        models.AuditLog.user == current_user.username
    ).order_by(models.AuditLog.id.desc()).limit(100).all()
    return [{"id": l.id, "action": l.action, "user": l.user, "share_id": l.share_id,
             "timestamp": str(l.timestamp), "ip_address": l.ip_address,
             "current_hash": l.current_hash} for l in logs]


@app.get("/audit-logs/verify", tags=["Audit"])
def verify_audit_integrity(db: Session = Depends(get_db),
                           current_user: models.User = Depends(get_current_user)):
    return verify_audit_chain(db)


if __name__ == "__main__":
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
