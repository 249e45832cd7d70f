"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' while the store answers, 'error' when it does not
  - No authentication required
"""

from __future__ import annotations

from auth.errors import StoreUnavailableError


def test_health_returns_200_with_components(api):
    """Health endpoint returns 200 with status, version, and components."""
    resp = api.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert data["components"]["app"] == "ok"
    assert data["components"]["database"] == "ok"


def test_health_no_auth_required(api):
    """Health endpoint is accessible without any authentication headers."""
    resp = api.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


def test_health_degraded_when_store_unreachable(api, monkeypatch):
    """A store that cannot answer yields status 'degraded' but still HTTP 200."""

    def _unavailable(*args, **kwargs):
        raise StoreUnavailableError("Account store is unavailable.")

    monkeypatch.setattr(api.service.store, "_connect", _unavailable)
    resp = api.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "error"
