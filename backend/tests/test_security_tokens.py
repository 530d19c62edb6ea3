"""
Tests for JWT issuing/validation and the API auth dependencies.
"""

import uuid
from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from api import deps
from core.security import create_access_token, decode_access_token

USER_ID = "00000000-0000-0000-0000-000000000001"


class TestTokens:
    def test_round_trip(self):
        token = create_access_token({"sub": USER_ID, "role": "admin"})

        payload = decode_access_token(token)

        assert payload["sub"] == USER_ID
        assert payload["role"] == "admin"

    def test_expired_token_is_rejected(self):
        token = create_access_token({"sub": USER_ID}, expires_delta=timedelta(seconds=-1))
        assert decode_access_token(token) is None

    def test_garbage_is_rejected(self):
        assert decode_access_token("not-a-jwt") is None


@pytest.mark.asyncio
class TestAuthDependencies:
    async def test_valid_bearer_token(self, monkeypatch):
        monkeypatch.setattr(deps.settings, "debug", False)
        token = create_access_token({"sub": USER_ID, "role": "manager"})

        user = await deps.get_current_user(HTTPAuthorizationCredentials(scheme="Bearer", credentials=token))

        assert user["role"] == "manager"
        assert await deps.get_current_user_id(user) == uuid.UUID(USER_ID)

    async def test_missing_credentials(self, monkeypatch):
        monkeypatch.setattr(deps.settings, "debug", False)
        with pytest.raises(HTTPException) as exc:
            await deps.get_current_user(None)
        assert exc.value.status_code == 401

    async def test_invalid_token(self, monkeypatch):
        monkeypatch.setattr(deps.settings, "debug", False)
        with pytest.raises(HTTPException) as exc:
            await deps.get_current_user(HTTPAuthorizationCredentials(scheme="Bearer", credentials="bogus"))
        assert exc.value.status_code == 401

    async def test_debug_mode_returns_dev_admin(self, monkeypatch):
        monkeypatch.setattr(deps.settings, "debug", True)

        user = await deps.get_current_user(None)

        assert user["sub"] == deps.DEV_USER_ID
        assert deps.is_admin(user)
