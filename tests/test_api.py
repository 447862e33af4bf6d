from unittest.mock import MagicMock

from email_client import EmailClient, EmailDeliveryError, get_email_client
from errors import PersistenceError
from main import app
from share_routes import get_share_service
from share_service import ShareService
from share_store import InMemoryShareStore

from conftest import FakeCertificateRepository


def create_share(client, headers, certificate_ids, **extra):
    payload = {"certificate_ids": certificate_ids, "expiry_days": 1}
    payload.update(extra)
    resp = client.post("/shares", json=payload, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health_reports_store_mode(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["share_store"] == "sql"
    assert body["demo_mode"] is False


def test_owner_routes_require_auth(client):
    assert client.get("/shares").status_code == 401
    assert client.post("/shares", json={"certificate_ids": ["x"], "expiry_days": 1}).status_code == 401


def test_register_rejects_weak_password(client):
    resp = client.post("/register", json={"username": "bob", "password": "weak", "email": "bob@example.com"})
    assert resp.status_code == 422


def test_login_locks_after_repeated_failures(client, auth_headers):
    for _ in range(5):
        assert client.post("/login", json={"username": "owner", "password": "nope"}).status_code == 401
    resp = client.post("/login", json={"username": "owner", "password": "Sup3rSecret"})
    assert resp.status_code == 423


def test_certificates_are_listed_with_status(client, auth_headers, certificate_ids):
    certs = client.get("/certificates", headers=auth_headers).json()
    assert {c["id"] for c in certs} == set(certificate_ids)
    assert all(c["status"] == "valid" for c in certs)


def test_create_share_response(client, auth_headers, certificate_ids):
    body = create_share(client, auth_headers, certificate_ids, max_downloads=2)
    assert body["synced"] is True
    assert body["share_url"] == f"https://wallet.test/share/{body['token']}"
    assert len(body["token"]) == 32
    assert body["expires_at"] is not None


def test_create_share_validation(client, auth_headers, certificate_ids):
    assert client.post("/shares", json={"certificate_ids": [], "expiry_days": 1},
                       headers=auth_headers).status_code == 422
    assert client.post("/shares", json={"certificate_ids": certificate_ids, "expiry_days": -2},
                       headers=auth_headers).status_code == 422
    assert client.post("/shares", json={"certificate_ids": certificate_ids, "expiry_days": 1, "max_downloads": 0},
                       headers=auth_headers).status_code == 422
    assert client.post("/shares", json={"certificate_ids": ["someone-elses"], "expiry_days": 1},
                       headers=auth_headers).status_code == 404


def test_download_limited_share_end_to_end(client, auth_headers, certificate_ids):
    share = create_share(client, auth_headers, certificate_ids, max_downloads=2)
    token = share["token"]

    resolved = client.get(f"/share/{token}")
    assert resolved.status_code == 200
    body = resolved.json()
    assert body["status"] == "ok"
    assert [c["id"] for c in body["certificates"]] == certificate_ids

    for cert_id in certificate_ids:
        resp = client.post(f"/share/{token}/certificates/{cert_id}/download")
        assert resp.status_code == 200
        assert resp.json()["certificates"][0]["file_url"].startswith("https://files.test/")

    third = client.get(f"/share/{token}")
    assert third.status_code == 410
    assert third.json() == {"status": "rejected", "reason": "download_limit"}


def test_password_protected_share_end_to_end(client, auth_headers, certificate_ids):
    token = create_share(client, auth_headers, certificate_ids[:1], password="Open-S3same")["token"]

    assert client.get(f"/share/{token}").json() == {"status": "password_required"}

    wrong = client.post(f"/share/{token}/password", json={"password": "open-sesame"})
    assert wrong.status_code == 403
    assert wrong.json() == {"status": "rejected", "reason": "invalid_password"}

    right = client.post(f"/share/{token}/password", json={"password": "Open-S3same"})
    assert right.status_code == 200
    body = right.json()
    assert body["status"] == "ok"
    assert [c["id"] for c in body["certificates"]] == certificate_ids[:1]

    grant = {"X-Share-Grant": body["grant"]}
    assert client.get(f"/share/{token}", headers=grant).json()["status"] == "ok"
    download = client.post(f"/share/{token}/certificates/{certificate_ids[0]}/download", headers=grant)
    assert download.status_code == 200
    assert client.post(f"/share/{token}/certificates/{certificate_ids[0]}/download").json()["status"] == \
        "password_required"


def test_share_grant_is_not_an_owner_session(client, auth_headers, certificate_ids):
    token = create_share(client, auth_headers, certificate_ids[:1], password="pw")["token"]
    grant = client.post(f"/share/{token}/password", json={"password": "pw"}).json()["grant"]
    assert client.get("/shares", headers={"Authorization": f"Bearer {grant}"}).status_code == 401


def test_revocation_end_to_end(client, auth_headers, certificate_ids):
    share = create_share(client, auth_headers, certificate_ids, password="pw")

    for _ in range(2):
        resp = client.post(f"/shares/{share['share_id']}/revoke", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    resolved = client.get(f"/share/{share['token']}")
    assert resolved.status_code == 410
    assert resolved.json()["reason"] == "revoked"
    assert client.post(f"/share/{share['token']}/password", json={"password": "pw"}).json()["reason"] == "revoked"


def test_revoke_someone_elses_share(client, auth_headers, certificate_ids):
    share = create_share(client, auth_headers, certificate_ids)
    client.post("/register", json={"username": "mallory", "password": "Mall0ryPass", "email": "m@example.com"})
    login = client.post("/login", json={"username": "mallory", "password": "Mall0ryPass"}).json()
    other = {"Authorization": f"Bearer {login['access_token']}"}

    assert client.post(f"/shares/{share['share_id']}/revoke", headers=other).status_code == 404
    assert client.get(f"/share/{share['token']}").json()["status"] == "ok"


def test_unknown_token(client):
    resp = client.get("/share/" + "0" * 32)
    assert resp.status_code == 404
    assert resp.json() == {"status": "rejected", "reason": "not_found"}


def test_list_shares_never_exposes_password_hash(client, auth_headers, certificate_ids):
    share = create_share(client, auth_headers, certificate_ids, password="pw")
    client.get(f"/share/{share['token']}")
    listed = client.get("/shares", headers=auth_headers).json()

    assert len(listed) == 1
    assert listed[0]["id"] == share["share_id"]
    assert listed[0]["is_password_protected"] is True
    assert "password_hash" not in listed[0]
    assert listed[0]["view_count"] == 0


def test_access_logs_and_analytics(client, auth_headers, certificate_ids):
    share = create_share(client, auth_headers, certificate_ids)
    client.get(f"/share/{share['token']}", headers={"User-Agent": "pytest-agent"})
    client.post(f"/share/{share['token']}/certificates/{certificate_ids[1]}/print")
    client.post(f"/certificates/{certificate_ids[0]}/access",
                json={"access_type": "view", "access_method": "qrcode"}, headers=auth_headers)

    logs = client.get(f"/shares/{share['share_id']}/access-logs", headers=auth_headers).json()
    assert len(logs) == 3
    assert {e["access_type"] for e in logs} == {"view", "print"}
    assert any(e["user_agent"] == "pytest-agent" for e in logs)

    summary = client.get("/analytics/summary", headers=auth_headers).json()
    assert summary["views"] == 3
    assert summary["prints"] == 1
    assert summary["most_viewed_certificate_id"] == certificate_ids[0]
    assert summary["active_shares"] == 1
    assert summary["access_by_method"] == {"link": 3, "qrcode": 1}


def test_email_share(client, auth_headers, certificate_ids):
    mailer = MagicMock(spec=EmailClient)
    app.dependency_overrides[get_email_client] = lambda: mailer
    share = create_share(client, auth_headers, certificate_ids)

    resp = client.post(f"/shares/{share['share_id']}/email",
                       json={"recipients": ["hr@example.com"], "message": "As discussed"},
                       headers=auth_headers)

    assert resp.status_code == 200
    recipients, subject, text = mailer.send.call_args.args
    assert recipients == ["hr@example.com"]
    assert "Olive Owner shared 2 certificates" in subject
    assert share["share_url"] in text and "As discussed" in text

    logs = client.get(f"/shares/{share['share_id']}/access-logs", headers=auth_headers).json()
    assert len(logs) == 2
    assert {(e["access_type"], e["recipient_email"]) for e in logs} == {("email", "hr@example.com")}


def test_email_share_delivery_failure(client, auth_headers, certificate_ids):
    mailer = MagicMock(spec=EmailClient)
    mailer.send.side_effect = EmailDeliveryError("Email provider unreachable")
    app.dependency_overrides[get_email_client] = lambda: mailer
    share = create_share(client, auth_headers, certificate_ids)

    resp = client.post(f"/shares/{share['share_id']}/email", json={"recipients": ["hr@example.com"]},
                       headers=auth_headers)

    assert resp.status_code == 502
    assert client.get(f"/shares/{share['share_id']}/access-logs", headers=auth_headers).json() == []


def test_revoked_share_cannot_be_emailed(client, auth_headers, certificate_ids):
    mailer = MagicMock(spec=EmailClient)
    app.dependency_overrides[get_email_client] = lambda: mailer
    share = create_share(client, auth_headers, certificate_ids)
    client.post(f"/shares/{share['share_id']}/revoke", headers=auth_headers)

    resp = client.post(f"/shares/{share['share_id']}/email", json={"recipients": ["hr@example.com"]},
                       headers=auth_headers)

    assert resp.status_code == 409
    mailer.send.assert_not_called()


def test_store_outage_is_reported_generically(client):
    class DownStore(InMemoryShareStore):
        def get_by_token(self, token):
            raise PersistenceError("connection refused by db-primary:5432")

    app.dependency_overrides[get_share_service] = lambda: ShareService(DownStore(), FakeCertificateRepository())

    resp = client.get("/share/" + "a" * 32)

    assert resp.status_code == 503
    assert "db-primary" not in resp.text
    assert resp.json() == {"detail": "Service temporarily unavailable, please try again"}


def test_audit_chain_covers_share_lifecycle(client, auth_headers, certificate_ids):
    share = create_share(client, auth_headers, certificate_ids)
    client.post(f"/shares/{share['share_id']}/revoke", headers=auth_headers)

    actions = [e["action"] for e in client.get("/audit-logs", headers=auth_headers).json()]
    assert actions[:2] == ["SHARE_REVOKED", "SHARE_CREATED"]
    assert "USER_LOGIN" in actions

    verified = client.get("/audit-logs/verify", headers=auth_headers).json()
    assert verified["valid"] is True
    assert verified["entries_checked"] >= 4


def test_create_share_with_expiry_beyond_limit(client, auth_headers, certificate_ids):
    resp = client.post("/shares", json={"certificate_ids": certificate_ids, "expiry_days": 3_000_000},
                       headers=auth_headers)
    assert resp.status_code == 422
    assert client.get("/shares", headers=auth_headers).json() == []


def test_download_counter_outage_refuses_download(client, auth_headers, certificate_ids):
    class CounterDownStore(InMemoryShareStore):
        def increment_download_count(self, share_id):
            raise PersistenceError("link_shares locked")

    store = CounterDownStore()
    service = ShareService(store, FakeCertificateRepository())
    app.dependency_overrides[get_share_service] = lambda: service
    token = service.create_share(owner_id=1, certificate_ids=["c1"], expiry_days=1, max_downloads=2).share.token

    resp = client.post(f"/share/{token}/certificates/c1/download")

    assert resp.status_code == 503
    assert store.list_access_logs() == []
