"""
tests/integration/test_gateway_api.py

Integration tests for the SignGate HTTP API.

Uses httpx's AsyncClient with the FastAPI app in test mode. Services are
built around in-memory stores, a mocked credential validator (or the in-memory credential store
for the account routes), and a fake
signer, so no Redis or signing service is needed. Time comes from a
controllable clock.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from signgate.main import build_services, create_app
from signgate.services.alert_repository import (
    AlertCondition,
    AlertRule,
    DEFAULT_ALERT_RULES,
    AlertType,
    InMemoryAlertRepository,
    Severity,
)
from signgate.services.credentials import InMemoryCredentialStore
from signgate.services.identity import CredentialRecord, validate_api_key_format
from signgate.services.quota_store import InMemoryQuotaStore
from signgate.services.quota_windows import Tier
from signgate.services.signer import SignatureResult
from signgate.utils.config import GatewaySettings
from signgate.utils.exceptions import (
    CredentialNotFoundError,
    SignerError,
    StoreUnavailableError,
)

ADMIN_KEY = "test-admin-key"
API_KEY = "sk_" + "cd" * 32
ROOM = "https://www.tiktok.com/@someone/live"
CLIENT_IP = "203.0.113.5"
T0 = datetime(2025, 3, 14, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeSigner:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[str] = []

    async def sign(self, room_url: str) -> SignatureResult:
        self.calls.append(room_url)
        if self.fail:
            raise SignerError("Signature service returned an error.")
        return SignatureResult(
            data={"signature": "sig", "signed_url": f"{room_url}?X-Bogus=abc", "X-Bogus": "abc"},
            latency_ms=3.0,
        )


class UnreadableStore(InMemoryQuotaStore):
    async def read(self, scope, window):
        raise StoreUnavailableError("Store unavailable.", operation="read")


def _validator() -> MagicMock:
    validator = MagicMock()

    async def validate(credential):
        if credential.secret != API_KEY:
            raise CredentialNotFoundError("miss")
        return CredentialRecord(account_id="acct-1", credential_id="cred-1", tier=Tier.FREE, active=True)

    validator.validate = AsyncMock(side_effect=validate)
    validator.touch_last_used = AsyncMock()
    return validator


def _build(store=None, signer=None, rules=(), validator=None):
    clock = FakeClock(T0)
    settings = GatewaySettings(admin_api_key=ADMIN_KEY, alerts_enabled=False)
    services = build_services(
        settings,
        store=store or InMemoryQuotaStore(),
        validator=validator or _validator(),
        alert_repository=InMemoryAlertRepository(rules),
        signer=signer or FakeSigner(),
        clock=clock,
    )
    return create_app(settings=settings, services=services), services, clock


@pytest.fixture
async def gateway():
    app, services, clock = _build()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac, services, clock


async def _sign(client, services, headers=None):
    response = await client.post(
        "/v1/signature",
        json={"url": ROOM},
        headers={"X-Forwarded-For": CLIENT_IP, **(headers or {})},
    )
    await services.dispatcher.drain()
    return response


class TestHealthEndpoints:
    @pytest.mark.asyncio
    async def test_health_returns_200(self, gateway):
        client, _, _ = gateway
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["service"] == "SignGate"

    @pytest.mark.asyncio
    async def test_ready_reports_store(self, gateway):
        client, _, _ = gateway
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json()["redis_connected"] is True

    @pytest.mark.asyncio
    async def test_unknown_path_uses_error_schema(self, gateway):
        client, _, _ = gateway
        response = await client.get("/nope")
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"


class TestSignature:
    @pytest.mark.asyncio
    async def test_anonymous_request_is_signed(self, gateway):
        client, services, _ = gateway
        response = await _sign(client, services)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["signature"] == "sig"
        assert body["tier"] == "free"
        assert response.headers["X-RateLimit-Tier"] == "free"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "5"

    @pytest.mark.asyncio
    async def test_room_url_alias_accepted(self, gateway):
        client, _, _ = gateway
        response = await client.post(
            "/v1/signature", json={"roomUrl": ROOM}, headers={"X-Forwarded-For": CLIENT_IP}
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_non_tiktok_url_rejected(self, gateway):
        client, _, _ = gateway
        response = await client.post(
            "/v1/signature", json={"url": "https://example.com/live"}, headers={"X-Forwarded-For": CLIENT_IP}
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_api_key_gets_unlimited_class(self, gateway):
        client, services, _ = gateway
        response = await _sign(client, services, {"Authorization": f"Bearer {API_KEY}"})

        assert response.status_code == 200
        assert response.json()["tier"] == "unlimited"
        assert response.headers["X-RateLimit-Limit"] == "100"

    @pytest.mark.asyncio
    async def test_invalid_key_gets_generic_401(self, gateway):
        client, _, _ = gateway
        response = await client.post(
            "/v1/signature",
            json={"url": ROOM},
            headers={"X-API-Key": "sk_" + "00" * 32, "X-Forwarded-For": CLIENT_IP},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credential."

    @pytest.mark.asyncio
    async def test_signer_failure_returns_502_and_spends_quota(self):
        app, services, _ = _build(signer=FakeSigner(fail=True))
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            failed = await _sign(client, services)
            assert failed.status_code == 502
            assert failed.json()["error"] == "SIGNER_ERROR"

            quota = await client.get("/v1/quota", headers={"X-Forwarded-For": CLIENT_IP})
            assert quota.json()["rate_limit"]["burst"]["used"] == 1

    @pytest.mark.asyncio
    async def test_store_outage_fails_open_with_degraded_header(self):
        app, services, _ = _build(store=UnreadableStore())
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await _sign(client, services)
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Degraded"] == "true"
        assert response.json()["rate_limit"]["degraded"] is True


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_burst_limit_then_recovery(self, gateway):
        client, services, clock = gateway

        for _ in range(5):
            response = await _sign(client, services)
            assert response.status_code == 200
            clock.advance(2)

        denied = await _sign(client, services)
        assert denied.status_code == 429
        body = denied.json()
        assert body["error"] == "RATE_LIMIT_EXCEEDED"
        assert body["window"] == "burst"
        assert body["retry_after_seconds"] == 50
        assert "upgrade" in body
        assert denied.headers["Retry-After"] == "50"
        assert denied.headers["X-RateLimit-Remaining"] == "0"
        assert denied.headers["X-RateLimit-Window"] == "burst"

        clock.advance(51)
        assert (await _sign(client, services)).status_code == 200

    @pytest.mark.asyncio
    async def test_denied_requests_do_not_consume_quota(self, gateway):
        client, services, _ = gateway
        for _ in range(5):
            await _sign(client, services)
        for _ in range(3):
            assert (await _sign(client, services)).status_code == 429

        quota = await client.get("/v1/quota", headers={"X-Forwarded-For": CLIENT_IP})
        body = quota.json()
        assert body["allowed"] is False
        assert body["denied_reason"] == "burst"
        assert body["rate_limit"]["hourly"]["used"] == 5

    @pytest.mark.asyncio
    async def test_quota_endpoint_is_free(self, gateway):
        client, _, _ = gateway
        for _ in range(10):
            response = await client.get("/v1/quota", headers={"X-Forwarded-For": CLIENT_IP})
            assert response.status_code == 200
        assert response.json()["allowed"] is True
        assert response.json()["rate_limit"]["daily"]["remaining"] == 100

    @pytest.mark.asyncio
    async def test_ips_are_limited_independently(self, gateway):
        client, services, _ = gateway
        for _ in range(5):
            await _sign(client, services)
        other = await _sign(client, services, {"X-Forwarded-For": "198.51.100.7"})
        assert other.status_code == 200


class TestAdminAlerts:
    @pytest.mark.asyncio
    async def test_admin_routes_require_key(self, gateway):
        client, _, _ = gateway
        assert (await client.get("/v1/admin/alerts")).status_code == 401
        wrong = await client.get("/v1/admin/alerts", headers={"X-Admin-Key": "wrong"})
        assert wrong.status_code == 401

    @pytest.mark.asyncio
    async def test_evaluate_and_acknowledge(self):
        rule = AlertRule(
            rule_id="signer-down",
            name="Signer down",
            condition=AlertCondition(AlertType.CONSECUTIVE_FAILURES, 2, 5),
            severity=Severity.CRITICAL,
        )
        app, services, _ = _build(signer=FakeSigner(fail=True), rules=[rule])
        admin = {"X-Admin-Key": ADMIN_KEY}
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            await _sign(client, services)
            await _sign(client, services)

            evaluated = await client.post("/v1/admin/alerts/evaluate", headers=admin)
            assert evaluated.status_code == 200
            assert evaluated.json()["count"] == 1

            listed = (await client.get("/v1/admin/alerts", headers=admin)).json()
            alert_id = listed["alerts"][0]["alert_id"]

            acked = await client.post(
                f"/v1/admin/alerts/{alert_id}/acknowledge", json={"operator": "oncall"}, headers=admin
            )
            assert acked.status_code == 200
            assert acked.json()["acknowledged_by"] == "oncall"

            again = await client.post(
                f"/v1/admin/alerts/{alert_id}/acknowledge", json={"operator": "oncall"}, headers=admin
            )
            assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_throttled_callers_do_not_raise_alerts(self):
        app, services, _ = _build(rules=DEFAULT_ALERT_RULES)
        admin = {"X-Admin-Key": ADMIN_KEY}
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            for _ in range(5):
                assert (await _sign(client, services)).status_code == 200
            for _ in range(10):
                assert (await _sign(client, services)).status_code == 429

            evaluated = await client.post("/v1/admin/alerts/evaluate", headers=admin)
        assert evaluated.status_code == 200
        assert evaluated.json()["count"] == 0

    @pytest.mark.asyncio
    async def test_patch_rule(self):
        rule = AlertRule(
            rule_id="signer-down",
            name="Signer down",
            condition=AlertCondition(AlertType.CONSECUTIVE_FAILURES, 2, 5),
            severity=Severity.CRITICAL,
        )
        app, _, _ = _build(rules=[rule])
        admin = {"X-Admin-Key": ADMIN_KEY}
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            patched = await client.patch("/v1/admin/alert-rules/signer-down", json={"enabled": False}, headers=admin)
            assert patched.status_code == 200
            assert patched.json()["enabled"] is False

            empty = await client.patch("/v1/admin/alert-rules/signer-down", json={}, headers=admin)
            assert empty.status_code == 400

            missing = await client.patch("/v1/admin/alert-rules/nope", json={"enabled": True}, headers=admin)
            assert missing.status_code == 404


class TestAccountApiKeys:
    SESSION = {"X-Session-Token": "session-acct-1", "X-Forwarded-For": CLIENT_IP}

    @pytest.fixture
    async def account(self):
        credentials = InMemoryCredentialStore()
        credentials.add_session("session-acct-1", "acct-1")
        credentials.add_session("session-acct-2", "acct-2")
        app, services, _ = _build(validator=credentials)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac, services

    @pytest.mark.asyncio
    async def test_anonymous_caller_is_forbidden(self, account):
        client, _ = account
        response = await client.get("/v1/account/api-keys", headers={"X-Forwarded-For": CLIENT_IP})
        assert response.status_code == 403
        assert response.json()["error"] == "PERMISSION_DENIED"

    @pytest.mark.asyncio
    async def test_issued_key_is_listed_and_signs_unlimited(self, account):
        client, services = account
        created = await client.post("/v1/account/api-keys", json={"name": "ci"}, headers=self.SESSION)
        assert created.status_code == 201
        body = created.json()
        assert validate_api_key_format(body["api_key"])
        assert body["name"] == "ci"
        assert body["created_at"].startswith("2025-03-14T12:00:00")

        listed = (await client.get("/v1/account/api-keys", headers=self.SESSION)).json()
        assert listed["count"] == 1
        assert listed["api_keys"][0]["credential_id"] == body["credential_id"]
        assert "api_key" not in listed["api_keys"][0]

        signed = await _sign(client, services, {"X-API-Key": body["api_key"]})
        assert signed.status_code == 200
        assert signed.json()["tier"] == "unlimited"

    @pytest.mark.asyncio
    async def test_revoked_key_stops_working(self, account):
        client, services = account
        created = (await client.post("/v1/account/api-keys", json={}, headers=self.SESSION)).json()
        assert created["name"] == "Default"

        revoked = await client.delete(f"/v1/account/api-keys/{created['credential_id']}", headers=self.SESSION)
        assert revoked.status_code == 200
        assert revoked.json()["active"] is False

        rejected = await _sign(client, services, {"X-API-Key": created["api_key"]})
        assert rejected.status_code == 401

        again = await client.delete(f"/v1/account/api-keys/{created['credential_id']}", headers=self.SESSION)
        assert again.status_code == 404
        assert again.json()["error"] == "API_KEY_NOT_FOUND"

        listed = (await client.get("/v1/account/api-keys", headers=self.SESSION)).json()
        assert listed["count"] == 0

    @pytest.mark.asyncio
    async def test_other_accounts_cannot_revoke(self, account):
        client, services = account
        created = (await client.post("/v1/account/api-keys", json={}, headers=self.SESSION)).json()

        other = {"X-Session-Token": "session-acct-2", "X-Forwarded-For": CLIENT_IP}
        response = await client.delete(f"/v1/account/api-keys/{created['credential_id']}", headers=other)
        assert response.status_code == 404

        still_valid = await _sign(client, services, {"X-API-Key": created["api_key"]})
        assert still_valid.status_code == 200
