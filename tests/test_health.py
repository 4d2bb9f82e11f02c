"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status and version
  - No authentication required
  - Host header outside the allow-list is refused
"""

from __future__ import annotations

from api.main import VERSION


def test_health_returns_200_with_version(api_client):
    resp = api_client.client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": VERSION}


def test_health_no_auth_required(api_client):
    resp = api_client.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_untrusted_host_is_rejected(api_client):
    resp = api_client.client.get("/api/v1/health", headers={"Host": "evil.example"})
    assert resp.status_code == 400
