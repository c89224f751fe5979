"""
Tests for the HTTP API.

Requests go through the real FastAPI app with the module-level service
getters pointed at the per-test reconciler, activity log and scheduler.
"""

import httpx
import pytest
import pytest_asyncio

from core.activity_logger import ActivityLogger
from core.cert_scheduler import CertScheduler
from core.errors import (
    FatalCAError,
    NotYetDueError,
    ProxyManagerError,
    RateLimitedError,
    RollbackFailedError,
)
from endpoints.common import to_http_exception
from main import app

UPSTREAMS = [{"host": "10.0.0.5", "port": 80}]


@pytest.fixture
def scheduler(reconciler, clock):
    return CertScheduler(reconciler, interval_seconds=3600, threshold_days=30, clock=clock)


@pytest_asyncio.fixture
async def client(monkeypatch, reconciler, db, scheduler):
    monkeypatch.setattr("endpoints.sites.get_reconciler", lambda: reconciler)
    monkeypatch.setattr("endpoints.certificates.get_reconciler", lambda: reconciler)
    monkeypatch.setattr("endpoints.sites.get_activity_logger", lambda: ActivityLogger(db))
    monkeypatch.setattr("endpoints.certificates.get_cert_scheduler", lambda: scheduler)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def create_site(client, name: str = "app.example.com") -> dict:
    response = await client.post("/sites/", json={"name": name, "upstreams": UPSTREAMS})
    assert response.status_code == 201
    return response.json()


class TestSiteEndpoints:

    @pytest.mark.asyncio
    async def test_create_site(self, client):
        response = await client.post(
            "/sites/",
            json={"name": "App.Example.com", "upstreams": UPSTREAMS},
            headers={"X-Actor": "alice"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "app.example.com"
        assert data["status"] == "active"

        activity = (await client.get("/sites/activity")).json()
        assert activity[0]["actor"] == "alice"
        assert activity[0]["success"] is True

    @pytest.mark.asyncio
    async def test_actor_defaults_to_system(self, client):
        await create_site(client)

        activity = (await client.get("/sites/activity", params={"type": "config_change"})).json()

        assert activity[0]["actor"] == "system"

    @pytest.mark.asyncio
    async def test_create_duplicate(self, client):
        await create_site(client)

        response = await client.post("/sites/", json={"name": "app.example.com", "upstreams": UPSTREAMS})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "already_exists"

    @pytest.mark.asyncio
    async def test_create_requires_upstreams(self, client):
        response = await client.post("/sites/", json={"name": "app.example.com", "upstreams": []})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_rejected_by_nginx(self, client, runner):
        runner.reject = lambda: "nginx: [emerg] host not found in upstream"

        response = await client.post("/sites/", json={"name": "app.example.com", "upstreams": UPSTREAMS})

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["error"] == "reload_failed"
        assert "host not found" in detail["reason"]
        assert (await client.get("/sites/")).json() == []

    @pytest.mark.asyncio
    async def test_get_unknown_site(self, client):
        response = await client.get("/sites/site-missing")

        assert response.status_code == 404
        assert response.json()["detail"]["resource"] == "site-missing"

    @pytest.mark.asyncio
    async def test_update_site(self, client):
        site = await create_site(client)

        response = await client.put(f"/sites/{site['id']}", json={"upstreams": [{"host": "10.0.0.9", "port": 8080}]})

        assert response.status_code == 200
        assert response.json()["upstreams"][0]["port"] == 8080

    @pytest.mark.asyncio
    async def test_enable_ssl_without_certificate(self, client):
        site = await create_site(client)

        response = await client.post(f"/sites/{site['id']}/ssl", json={"enabled": True})

        assert response.status_code == 412
        assert response.json()["detail"]["error"] == "precondition_failed"

    @pytest.mark.asyncio
    async def test_delete_site(self, client):
        site = await create_site(client)

        response = await client.delete(f"/sites/{site['id']}")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert (await client.get(f"/sites/{site['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_reload(self, client):
        response = await client.post("/sites/reload")

        assert response.status_code == 200
        assert response.json()["success"] is True


class TestCertificateEndpoints:

    @pytest.mark.asyncio
    async def test_upload_never_returns_private_key(self, client, cert_factory):
        site = await create_site(client)
        cert_pem, key_pem = cert_factory("app.example.com", days_valid=60)

        response = await client.post(
            "/certificates/upload",
            json={"site_id": site["id"], "certificate": cert_pem, "private_key": key_pem},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["auto_renew"] is False
        assert data["days_until_expiry"] == 60
        assert "private_key" not in data
        assert "material" not in data

        listed = (await client.get("/certificates/")).json()
        assert [c["id"] for c in listed] == [data["id"]]

    @pytest.mark.asyncio
    async def test_upload_for_other_domain(self, client, cert_factory):
        site = await create_site(client)
        cert_pem, key_pem = cert_factory("other.example.com")

        response = await client.post(
            "/certificates/upload",
            json={"site_id": site["id"], "certificate": cert_pem, "private_key": key_pem},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "certificate_invalid"

    @pytest.mark.asyncio
    async def test_renew_uploaded_certificate(self, client, cert_factory):
        site = await create_site(client)
        cert_pem, key_pem = cert_factory("app.example.com", days_valid=10)
        cert = (
            await client.post(
                "/certificates/upload",
                json={"site_id": site["id"], "certificate": cert_pem, "private_key": key_pem},
            )
        ).json()

        response = await client.post(f"/certificates/{cert['id']}/renew")

        assert response.status_code == 412

    @pytest.mark.asyncio
    async def test_issue_and_delete(self, client):
        site = await create_site(client)

        issued = await client.post("/certificates/", json={"site_id": site["id"]})
        assert issued.status_code == 201
        assert issued.json()["issuer"] == "Let's Encrypt"

        deleted = await client.delete(f"/certificates/{issued.json()['id']}")
        assert deleted.status_code == 204
        assert (await client.get(f"/certificates/{issued.json()['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_issue_rate_limited(self, client, fake_ca):
        site = await create_site(client)
        fake_ca.error = RateLimitedError("too many certificates already issued")

        response = await client.post("/certificates/", json={"site_id": site["id"]})

        assert response.status_code == 429
        assert response.json()["detail"]["error"] == "rate_limited"

    @pytest.mark.asyncio
    async def test_issue_invalid_email(self, client, fake_ca):
        site = await create_site(client)

        response = await client.post("/certificates/", json={"site_id": site["id"], "email": "not-an-email"})

        assert response.status_code == 422
        assert fake_ca.calls == []

    @pytest.mark.asyncio
    async def test_scheduler_status(self, client):
        response = await client.get("/certificates/scheduler/status")

        assert response.status_code == 200
        assert response.json()["renew_threshold_days"] == 30

    @pytest.mark.asyncio
    async def test_trigger_sweep(self, client):
        response = await client.post("/certificates/scheduler/sweep")

        assert response.status_code == 200
        assert response.json()["checked"] == 0


class TestErrorMapping:
    """Tests for to_http_exception."""

    def test_rollback_failed(self):
        error = RollbackFailedError(
            "Nginx reload failed", reason="bad config", restore_error="write failed", resource="app.example.com"
        )

        exc = to_http_exception(error)

        assert exc.status_code == 500
        assert exc.detail["reason"] == "bad config"
        assert exc.detail["restore_error"] == "write failed"

    def test_fatal_ca_error(self):
        exc = to_http_exception(FatalCAError("challenge failed"))
        assert exc.status_code == 502
        assert exc.detail["error"] == "ca_error"

    def test_not_yet_due(self):
        assert to_http_exception(NotYetDueError("not due")).status_code == 409

    def test_unmapped_error(self):
        exc = to_http_exception(ProxyManagerError("unexpected"))
        assert exc.status_code == 500
        assert exc.detail == {"error": "internal_error", "message": "unexpected"}

    def test_suggestion_is_included(self):
        exc = to_http_exception(RateLimitedError("slow down"))
        assert exc.status_code == 429
        assert "suggestion" in exc.detail



@pytest.mark.asyncio
async def test_health_summarizes_state(monkeypatch, client, reconciler, scheduler):
    monkeypatch.setattr("core.reconciler.get_reconciler", lambda: reconciler)
    monkeypatch.setattr("core.cert_scheduler.get_cert_scheduler", lambda: scheduler)
    site = await create_site(client)
    await client.post("/certificates/", json={"site_id": site["id"]})
    await client.post(f"/sites/{site['id']}/ssl", json={"enabled": True})

    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["reload_mode"] == "container"
    assert data["sites"] == {"total": 1, "ssl_enabled": 1}
    assert data["ssl"]["valid"] == 1
    assert data["scheduler"]["is_running"] is False
