"""
Identity resolution against header and cookie credentials, plus the
identity provider REST client.
"""
import asyncio
import json

import httpx
import pytest
from starlette.requests import Request
from starlette.responses import Response

from portal_backend.identity import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    IdentityError,
    IdentityProviderClient,
    bearer_token,
    resolve_identity,
    token_expired,
)
from portal_backend.models import Identity, SessionTokens


def make_request(headers=None, cookies=None):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        raw.append((b"cookie", "; ".join(f"{k}={v}" for k, v in cookies.items()).encode()))
    return Request({"type": "http", "method": "GET", "path": "/api/files", "headers": raw, "query_string": b""})


class TestTokenHelpers:

    def test_bearer_token_parsing(self):
        assert bearer_token(make_request({"Authorization": "Bearer abc"})) == "abc"
        assert bearer_token(make_request({"Authorization": "bearer  abc "})) == "abc"
        assert bearer_token(make_request({"Authorization": "Basic abc"})) is None
        assert bearer_token(make_request({"Authorization": "Bearer "})) is None
        assert bearer_token(make_request()) is None

    def test_expiry(self, access_token_for):
        assert token_expired(access_token_for("u1")) is False
        assert token_expired(access_token_for("u1", expires_in=-60)) is True
        assert token_expired("not-a-jwt") is True


class TestResolveIdentity:

    @pytest.fixture(autouse=True)
    def setup(self, identity_provider, access_token_for):
        self.provider = identity_provider
        self.fresh = access_token_for("user-client-a")
        self.expired = access_token_for("user-client-a", expires_in=-60)
        self.provider.register(self.fresh, "user-client-a", "hr@acme.test")
        self.rotated = access_token_for("user-client-a")
        self.provider.refresh_tokens["refresh-1"] = (
            SessionTokens(access_token=self.rotated, refresh_token="refresh-2", expires_in=3600),
            Identity(user_id="user-client-a", email="hr@acme.test")
        )

    def resolve(self, **kwargs):
        return asyncio.run(resolve_identity(make_request(**kwargs), self.provider))

    def test_no_credentials(self):
        result = self.resolve()

        assert result.authenticated is False
        assert result.clear_cookies is False
        assert self.provider.calls == []

    def test_header_wins_over_cookie(self):
        result = self.resolve(
            headers={"Authorization": "Bearer internal-token"},
            cookies={ACCESS_COOKIE: self.fresh}
        )

        assert result.identity.user_id == "user-internal"
        assert result.source == "header"
        assert self.provider.calls == [("get_user", "internal-token")]

    def test_rejected_header_does_not_fall_back_to_cookie(self):
        result = self.resolve(
            headers={"Authorization": "Bearer bogus"},
            cookies={ACCESS_COOKIE: self.fresh, REFRESH_COOKIE: "refresh-1"}
        )

        assert result.authenticated is False
        assert self.provider.calls == [("get_user", "bogus")]

    def test_non_bearer_header_does_not_fall_back_to_cookie(self):
        for header in ["Basic dXNlcjpwYXNz", "Bearer", "internal-token"]:
            result = self.resolve(
                headers={"Authorization": header},
                cookies={ACCESS_COOKIE: self.fresh, REFRESH_COOKIE: "refresh-1"}
            )

            assert result.authenticated is False, header
            assert result.refreshed is None
        assert self.provider.calls == []

    def test_valid_cookie(self):
        result = self.resolve(cookies={ACCESS_COOKIE: self.fresh})

        assert result.identity.user_id == "user-client-a"
        assert result.source == "cookie"
        assert result.refreshed is None

    def test_expired_cookie_is_refreshed(self):
        result = self.resolve(cookies={ACCESS_COOKIE: self.expired, REFRESH_COOKIE: "refresh-1"})

        assert result.identity.user_id == "user-client-a"
        assert result.refreshed.refresh_token == "refresh-2"
        assert result.access_token == self.rotated
        # Expired token is never sent to the provider
        assert self.provider.calls == [("refresh_session", "refresh-1")]

    def test_failed_refresh_clears_cookies(self):
        result = self.resolve(cookies={ACCESS_COOKIE: self.expired, REFRESH_COOKIE: "revoked"})

        assert result.authenticated is False
        assert result.clear_cookies is True

        response = Response()
        result.apply_cookies(response)
        set_cookies = response.headers.getlist("set-cookie")
        assert any(c.startswith(f"{ACCESS_COOKIE}=") and "Max-Age=0" in c for c in set_cookies)
        assert any(c.startswith(f"{REFRESH_COOKIE}=") and "Max-Age=0" in c for c in set_cookies)

    def test_refreshed_tokens_are_written_back(self):
        result = self.resolve(cookies={REFRESH_COOKIE: "refresh-1"})

        response = Response()
        result.apply_cookies(response, secure=True)
        set_cookies = response.headers.getlist("set-cookie")
        access = [c for c in set_cookies if c.startswith(f"{ACCESS_COOKIE}=")][0]
        assert self.rotated in access
        assert "HttpOnly" in access
        assert "Secure" in access
        assert "samesite=lax" in access.lower()


class TestIdentityProviderClient:

    @pytest.fixture(autouse=True)
    def setup(self):
        self.seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.seen.append(request)
            if request.url.path == "/auth/v1/user":
                if request.headers["authorization"] != "Bearer good-token":
                    return httpx.Response(401, json={"msg": "invalid JWT"})
                return httpx.Response(200, json={
                    "id": "user-1",
                    "email": "hr@acme.test",
                    "app_metadata": {"provider": "google"}
                })
            if request.url.path == "/auth/v1/token":
                body = json.loads(request.content)
                if body.get("refresh_token") == "good-refresh" or body.get("auth_code") == "good-code":
                    return httpx.Response(200, json={
                        "access_token": "new-access",
                        "refresh_token": "new-refresh",
                        "expires_in": 1800,
                        "user": {"id": "user-1", "email": "hr@acme.test"}
                    })
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(404)

        self.client = IdentityProviderClient(
            "https://auth.portal.test/",
            "anon-key",
            transport=httpx.MockTransport(handler)
        )

    def test_get_user(self):
        identity = asyncio.run(self.client.get_user("good-token"))

        assert identity.user_id == "user-1"
        assert identity.auth_method == "google"
        assert self.seen[0].headers["apikey"] == "anon-key"

    def test_get_user_rejected(self):
        with pytest.raises(IdentityError):
            asyncio.run(self.client.get_user("bad-token"))

    def test_refresh_session(self):
        tokens, identity = asyncio.run(self.client.refresh_session("good-refresh"))

        assert tokens.access_token == "new-access"
        assert tokens.expires_in == 1800
        assert identity.auth_method == "email"
        assert self.seen[0].url.params["grant_type"] == "refresh_token"

    def test_exchange_code_sends_verifier(self):
        asyncio.run(self.client.exchange_code("good-code", "verifier-xyz"))

        assert self.seen[0].url.params["grant_type"] == "pkce"
        assert json.loads(self.seen[0].content) == {"auth_code": "good-code", "code_verifier": "verifier-xyz"}

    def test_exchange_code_rejected(self):
        with pytest.raises(IdentityError):
            asyncio.run(self.client.exchange_code("stale-code"))

    def test_unreachable_provider(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        client = IdentityProviderClient("https://auth.portal.test", "anon-key", transport=httpx.MockTransport(handler))
        with pytest.raises(IdentityError):
            asyncio.run(client.get_user("good-token"))
