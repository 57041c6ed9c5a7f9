from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import HTTPException, Request

from app.core.auth import create_test_token, get_optional_user, verify_jwt_token
from app.core.config import settings


def make_request(headers=None) -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "query_string": b"",
    })


class TestVerifyJwtToken:

    def test_valid_token(self):
        payload = verify_jwt_token(create_test_token("user-1", plan="premium"))

        assert payload.id == "user-1"
        assert payload.plan == "premium"
        assert payload.email == "test@example.com"
        assert payload.is_expired() is False

    def test_expired_token(self):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"sub": "user-1", "exp": int((now - timedelta(minutes=1)).timestamp())},
            settings.AUTH_SECRET,
            algorithm="HS256",
        )

        with pytest.raises(HTTPException) as exc_info:
            verify_jwt_token(token)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Token has expired. Please log in again."

    def test_wrong_secret(self):
        token = jwt.encode(
            {"sub": "user-1", "exp": int(datetime.now(timezone.utc).timestamp()) + 60},
            "another-secret",
            algorithm="HS256",
        )

        with pytest.raises(HTTPException) as exc_info:
            verify_jwt_token(token)
        assert exc_info.value.detail == "Invalid token"

    def test_missing_subject(self):
        token = jwt.encode(
            {"exp": int(datetime.now(timezone.utc).timestamp()) + 60},
            settings.AUTH_SECRET,
            algorithm="HS256",
        )

        with pytest.raises(HTTPException):
            verify_jwt_token(token)


class TestOptionalUser:

    @pytest.mark.asyncio
    async def test_no_header(self):
        assert await get_optional_user(make_request()) is None

    @pytest.mark.asyncio
    async def test_invalid_token_is_anonymous(self):
        assert await get_optional_user(make_request({"Authorization": "Bearer nope"})) is None

    @pytest.mark.asyncio
    async def test_valid_token_is_memoised(self):
        request = make_request({"Authorization": f"Bearer {create_test_token('user-7')}"})

        user = await get_optional_user(request)

        assert user.id == "user-7"
        assert request.state.user is user
        assert await get_optional_user(request) is user


def test_create_test_token_refused_in_production(monkeypatch):
    monkeypatch.setattr(settings, "ENVIRONMENT", "production")
    with pytest.raises(RuntimeError):
        create_test_token("user-1")
