import os

# Pinned before any project module reads its configuration
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SECRET_KEY"] = "test-secret-key-with-at-least-32-characters"
os.environ["SHARE_BASE_URL"] = "https://wallet.test"
os.environ["SHARE_STORE_BACKEND"] = "sql"
os.environ["SHARE_EPHEMERAL_FALLBACK"] = "false"

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import models
from certificate_repo import CertificateRepository, SqlCertificateRepository
from database import Base, SessionLocal, engine
from main import app
from share_service import ShareService
from share_store import SqlShareStore, memory_store


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeCertificateRepository(CertificateRepository):
    """Certificates owned by user 1, keyed by id."""

    def __init__(self, ids=("c1", "c2", "c3"), owner_id=1):
        self.owner_id = owner_id
        self.certs = {
            i: {"id": i, "title": f"Certificate {i}", "type": None, "issuer": "Issuer",
                "cert_number": None, "description": None, "completion_date": None,
                "expiry_date": None, "status": "valid", "file_url": f"https://files.test/{i}.pdf"}
            for i in ids
        }

    def get_certificates_by_ids(self, ids):
        return [self.certs[i] for i in ids if i in self.certs]

    def get_owned_ids(self, owner_id, ids):
        if owner_id != self.owner_id:
            return []
        return [i for i in ids if i in self.certs]


@pytest.fixture(autouse=True)
def fresh_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    memory_store.clear()
    yield
    memory_store.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 10, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def owner(db):
    user = models.User(username="alice", email="alice@example.com", password_hash="x")
    db.add(user)
    db.commit()
    for cert_id, title in (("c1", "First Aid"), ("c2", "Forklift Licence"), ("c3", "Fire Safety")):
        db.add(models.Certificate(id=cert_id, owner_id=user.id, title=title,
                                  file_url=f"https://files.test/{cert_id}.pdf"))
    db.commit()
    return user


@pytest.fixture
def service(db, owner, clock):
    return ShareService(SqlShareStore(db), SqlCertificateRepository(db), clock=clock)


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(client):
    client.post("/register", json={
        "username": "owner", "password": "Sup3rSecret", "email": "owner@example.com",
        "full_name": "Olive Owner",
    })
    resp = client.post("/login", json={"username": "owner", "password": "Sup3rSecret"})
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


@pytest.fixture
def certificate_ids(client, auth_headers):
    ids = []
    for title in ("First Aid", "Forklift Licence"):
        resp = client.post("/certificates", json={"title": title, "issuer": "Red Cross",
                                                  "file_url": f"https://files.test/{title}.pdf"},
                           headers=auth_headers)
        ids.append(resp.json()["id"])
    return ids
