"""Tests for the HTTP surface of the consent ledger."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from consent_ledger.config import get_ledger_config
from consent_ledger.main import app
import consent_ledger.main as main_mod


client = TestClient(app)


@pytest.fixture(autouse=True)
def injected_service(service):
    original = main_mod.consent_service
    main_mod.consent_service = service
    try:
        yield service
    finally:
        main_mod.consent_service = original


@pytest.fixture
def admin_key(monkeypatch) -> str:
    monkeypatch.setattr(get_ledger_config(), "admin_api_key", "test-admin-key")
    return "test-admin-key"


def consent_payload(clock, **overrides) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "userId": "user-1",
        "purpose": "marketing",
        "dataTypes": ["email", "phone"],
        "validUntil": (clock() + timedelta(days=30)).isoformat(),
    }
    payload.update(overrides)
    return payload


def create_and_approve(clock) -> Dict[str, Any]:
    created = client.post("/consents", json=consent_payload(clock)).json()
    approved = client.post(f"/consents/approve/{created['approval_token']}")
    assert approved.status_code == 200
    return created


def test_health() -> None:
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "UP"
    assert data["components"]["consent_service"] is True


def test_root() -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["message"] == "Consent Ledger"


def test_create_returns_requested_consent(clock) -> None:
    response = client.post("/consents", json=consent_payload(clock))

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "REQUESTED"
    assert data["version"] == 1
    assert data["approval_token"]
    assert data["message"] == "Consent awaiting approval"


def test_create_rejects_malformed_body(clock) -> None:
    payload = consent_payload(clock)
    del payload["dataTypes"]

    response = client.post("/consents", json=payload)

    assert response.status_code == 400
    data = response.json()
    assert data["error"] == "Validation failed"
    assert any(issue["path"] == "dataTypes" for issue in data["issues"])


def test_create_rejects_unknown_fields(clock) -> None:
    response = client.post("/consents", json=consent_payload(clock, status="ACTIVE"))

    assert response.status_code == 400


def test_full_lifecycle(clock) -> None:
    created = create_and_approve(clock)

    fetched = client.get(f"/consents/{created['consent_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "ACTIVE"
    assert "approval_token" not in fetched.json()

    allowed = client.post("/process", json={
        "userId": "user-1", "purpose": "marketing", "dataTypes": ["email"]
    })
    assert allowed.status_code == 200
    assert allowed.json()["status"] == "PROCESSING_ALLOWED"

    denied = client.post("/process", json={
        "userId": "user-1", "purpose": "marketing", "dataTypes": ["email", "ssn"]
    })
    assert denied.status_code == 403
    assert denied.json() == {"error": "DataTypeNotConsented(ssn)"}

    revoked = client.post("/consents/revoke", json={"userId": "user-1", "purpose": "marketing"})
    assert revoked.status_code == 200
    assert revoked.json()["status"] == "REVOKED"

    after = client.post("/process", json={
        "userId": "user-1", "purpose": "marketing", "dataTypes": ["email"]
    })
    assert after.status_code == 403
    assert after.json() == {"error": "NoActiveConsent"}


def test_approve_token_twice(clock) -> None:
    created = client.post("/consents", json=consent_payload(clock)).json()

    first = client.post(f"/consents/approve/{created['approval_token']}")
    second = client.post(f"/consents/approve/{created['approval_token']}")

    assert first.status_code == 200
    assert first.json()["status"] == "APPROVED"
    assert second.status_code == 400


def test_approve_after_valid_until_conflicts(clock) -> None:
    payload = consent_payload(clock, validUntil=(clock() + timedelta(hours=1)).isoformat())
    created = client.post("/consents", json=payload).json()
    clock.advance(hours=2)

    response = client.post(f"/consents/approve/{created['approval_token']}")

    assert response.status_code == 409
    assert response.json()["status"] == "REJECTED"


def test_reject_token(clock) -> None:
    created = client.post("/consents", json=consent_payload(clock)).json()

    response = client.post(f"/consents/reject/{created['approval_token']}")

    assert response.status_code == 200
    assert response.json()["status"] == "REJECTED"
    assert client.post(f"/consents/reject/{created['approval_token']}").status_code == 400


def test_revoke_by_id_reports_not_active(clock) -> None:
    created = create_and_approve(clock)

    first = client.post(f"/consents/{created['consent_id']}/revoke")
    second = client.post(f"/consents/{created['consent_id']}/revoke")

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["error"] == "NOT_ACTIVE"


def test_semantic_revoke_without_active_consent() -> None:
    response = client.post("/consents/revoke", json={"userId": "user-1", "purpose": "marketing"})

    assert response.status_code == 200
    assert response.json() == {"status": "NO_ACTIVE_CONSENT", "purpose": "marketing"}


def test_unknown_consent_is_404() -> None:
    response = client.get("/consents/consent_missing")

    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


def test_get_consent_expires_lazily(clock) -> None:
    payload = consent_payload(clock, validUntil=(clock() + timedelta(days=1)).isoformat())
    created = client.post("/consents", json=payload).json()
    client.post(f"/consents/approve/{created['approval_token']}")
    clock.advance(days=2)

    response = client.get(f"/consents/{created['consent_id']}")

    assert response.json()["status"] == "EXPIRED"


def test_audit_requires_configured_key() -> None:
    response = client.get("/audit")

    assert response.status_code == 401
    assert "ADMIN_API_KEY not configured" in response.json()["detail"]


def test_audit_rejects_wrong_key(admin_key) -> None:
    response = client.get("/audit", headers={"X-API-Key": "wrong"})

    assert response.status_code == 401


def test_audit_with_key(clock, admin_key) -> None:
    create_and_approve(clock)

    response = client.get("/audit", headers={"X-API-Key": admin_key})
    verify = client.get("/audit/verify", headers={"X-API-Key": admin_key})

    assert response.status_code == 200
    assert [e["event_type"] for e in response.json()] == ["CONSENT_REQUESTED", "CONSENT_APPROVED"]
    assert verify.status_code == 200
    assert verify.json()["valid"] is True
    assert verify.json()["entries_checked"] == 2


def test_returns_503_when_service_missing() -> None:
    main_mod.consent_service = None

    response = client.get("/consents/consent_x")

    assert response.status_code == 503
    assert "Consent service not available" in response.json()["detail"]


def test_audit_rejects_non_ascii_key(admin_key) -> None:
    response = client.get("/audit", headers={"X-API-Key": "café".encode("latin-1")})

    assert response.status_code == 401


def test_create_checks_valid_until_against_service_clock(clock) -> None:
    payload = consent_payload(clock, validUntil=(clock() - timedelta(minutes=1)).isoformat())

    response = client.post("/consents", json=payload)

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_INPUT"
