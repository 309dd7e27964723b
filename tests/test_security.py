"""Security test suite — token validation and rate limiting.

Covers:
1. Access tokens: expiry, wrong type, wrong secret, bad subject
2. Role hierarchy on CurrentUser
3. Rate limiting on the batch-pass endpoint
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from discipline.auth.dependencies import CurrentUser
from discipline.auth.service import create_access_token
from discipline.common.constants import UserRole
from discipline.config import settings

BASE = "/api/v1/points"


def _token(**claims) -> str:
    payload = {
        "sub": str(uuid.uuid4()),
        "role": UserRole.hr_admin.value,
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    payload.update(claims)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


# ═════════════════════════════════════════════════════════════════════
# 1. ACCESS TOKENS
# ═════════════════════════════════════════════════════════════════════


class TestAccessTokens:
    async def test_valid_token(self, client):
        resp = await client.get(BASE, headers={"Authorization": f"Bearer {_token()}"})
        assert resp.status_code == 200

    async def test_expired_token(self, client):
        token = _token(exp=datetime.now(timezone.utc) - timedelta(minutes=1))
        resp = await client.get(BASE, headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert "expired" in resp.json()["detail"].lower()

    async def test_refresh_type_rejected(self, client):
        resp = await client.get(
            BASE, headers={"Authorization": f"Bearer {_token(type='refresh')}"},
        )
        assert resp.status_code == 401

    async def test_wrong_secret(self, client):
        token = jwt.encode(
            {"sub": str(uuid.uuid4()), "type": "access", "role": "hr_admin"},
            "some-other-secret",
            algorithm=settings.JWT_ALGORITHM,
        )
        resp = await client.get(BASE, headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    async def test_bad_subject(self, client):
        resp = await client.get(
            BASE, headers={"Authorization": f"Bearer {_token(sub='not-a-uuid')}"},
        )
        assert resp.status_code == 401

    async def test_unknown_role_falls_back_to_employee(self, client):
        resp = await client.get(
            BASE, headers={"Authorization": f"Bearer {_token(role='superuser')}"},
        )
        assert resp.status_code == 403

    def test_create_access_token_claims(self):
        user_id = uuid.uuid4()
        token = create_access_token(user_id, UserRole.manager)
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        assert payload["sub"] == str(user_id)
        assert payload["role"] == "manager"
        assert payload["type"] == "access"


# ═════════════════════════════════════════════════════════════════════
# 2. ROLE HIERARCHY
# ═════════════════════════════════════════════════════════════════════


class TestRoleHierarchy:
    def test_system_admin_includes_everything(self):
        user = CurrentUser(uuid.uuid4(), UserRole.system_admin)
        assert user.has_role(UserRole.employee)
        assert user.has_role(UserRole.hr_admin)

    def test_manager_is_not_hr_admin(self):
        user = CurrentUser(uuid.uuid4(), UserRole.manager)
        assert user.has_role(UserRole.employee)
        assert not user.has_role(UserRole.hr_admin)


# ═════════════════════════════════════════════════════════════════════
# 3. RATE LIMITING
# ═════════════════════════════════════════════════════════════════════


class TestRateLimiting:
    """Verify the rate limit on the batch-pass endpoint."""

    @pytest.fixture(autouse=True)
    def _enable_limiter(self):
        """Ensure rate limiter is enabled for these tests."""
        from discipline.common.rate_limit import limiter
        original = limiter.enabled
        limiter.enabled = True
        if hasattr(limiter, "_storage"):
            limiter._storage.reset()
        yield
        limiter.enabled = original

    async def test_expiration_run_limited_at_10_per_minute(self, client):
        """POST /expirations/run allows 10 requests/minute, then returns 429."""
        headers = {"Authorization": f"Bearer {_token(role='system_admin')}"}
        for i in range(10):
            resp = await client.post(f"{BASE}/expirations/run", json={}, headers=headers)
            assert resp.status_code != 429, f"Request {i+1} should not be rate-limited"

        resp = await client.post(f"{BASE}/expirations/run", json={}, headers=headers)
        assert resp.status_code == 429
