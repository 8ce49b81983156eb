"""
Identity resolution.

Credentials arrive either as an explicit bearer header or as session cookies.
The header always wins and is verified on its own, so a caller retrying
after a token refresh is never answered from a stale cookie session. A
header that is not a bearer credential leaves the request unauthenticated. The
cookie path may refresh the session transparently; the new tokens ride on
the resolution result so the gate can write them back to the browser.
"""
import logging
import time
from typing import Optional

import httpx
import jwt
from fastapi import Request, Response

from portal_backend.errors import Unauthenticated
from portal_backend.models import Identity, SessionTokens

logger = logging.getLogger(__name__)

ACCESS_COOKIE = "portal-access-token"
REFRESH_COOKIE = "portal-refresh-token"
VERIFIER_COOKIE = "portal-code-verifier"

REFRESH_COOKIE_MAX_AGE = 60 * 60 * 24 * 30
EXPIRY_LEEWAY_SECONDS = 10


class IdentityError(Exception):
    """The identity provider rejected a credential or could not be reached"""


def token_expired(token: str, leeway: int = EXPIRY_LEEWAY_SECONDS) -> bool:
    """Check the exp claim locally. The provider remains the authority on validity."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return True
    exp = claims.get("exp")
    if exp is None:
        return False
    return exp <= time.time() + leeway


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class IdentityProviderClient:
    """Client for the hosted auth service (user lookup, refresh, code exchange)"""

    def __init__(self, base_url: str, public_key: str, timeout: float = 10.0, transport=None):
        self.base_url = base_url.rstrip("/")
        self.public_key = public_key
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"apikey": self.public_key},
            timeout=self.timeout,
            transport=self.transport
        )

    @staticmethod
    def _identity(user: dict) -> Identity:
        if not user or not user.get("id"):
            raise IdentityError("Provider returned no user")
        app_metadata = user.get("app_metadata") or {}
        return Identity(
            user_id=user["id"],
            email=user.get("email"),
            auth_method=app_metadata.get("provider") or "email"
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise IdentityError(f"Identity provider unreachable: {e}")
        if response.status_code != 200:
            raise IdentityError(f"Identity provider returned {response.status_code}")
        try:
            return response.json()
        except ValueError:
            raise IdentityError("Identity provider returned a malformed body")

    async def get_user(self, access_token: str) -> Identity:
        user = await self._request(
            "GET", "/auth/v1/user",
            headers={"Authorization": f"Bearer {access_token}"}
        )
        return self._identity(user)

    async def _token_grant(self, grant_type: str, payload: dict) -> tuple[SessionTokens, Identity]:
        data = await self._request(
            "POST", "/auth/v1/token",
            params={"grant_type": grant_type},
            json=payload
        )
        try:
            tokens = SessionTokens(
                access_token=data["access_token"],
                refresh_token=data["refresh_token"],
                expires_in=data.get("expires_in", 3600)
            )
        except (KeyError, TypeError, ValueError):
            raise IdentityError("Identity provider returned no session")
        return tokens, self._identity(data.get("user"))

    async def refresh_session(self, refresh_token: str) -> tuple[SessionTokens, Identity]:
        return await self._token_grant("refresh_token", {"refresh_token": refresh_token})

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> tuple[SessionTokens, Identity]:
        payload = {"auth_code": code}
        if code_verifier:
            payload["code_verifier"] = code_verifier
        return await self._token_grant("pkce", payload)


class AuthResolution:
    """Outcome of resolving one request's credentials"""

    def __init__(
        self,
        identity: Optional[Identity] = None,
        source: Optional[str] = None,
        access_token: Optional[str] = None,
        refreshed: Optional[SessionTokens] = None,
        clear_cookies: bool = False
    ):
        self.identity = identity
        self.source = source
        self.access_token = access_token
        self.refreshed = refreshed
        self.clear_cookies = clear_cookies

    @property
    def authenticated(self) -> bool:
        return self.identity is not None

    def apply_cookies(self, response: Response, secure: bool = True) -> None:
        """Write refreshed (or cleared) session cookies onto an outgoing response"""
        if self.refreshed is not None:
            set_session_cookies(response, self.refreshed, secure)
        elif self.clear_cookies:
            clear_session_cookies(response)


def set_session_cookies(response: Response, tokens: SessionTokens, secure: bool = True) -> None:
    response.set_cookie(
        ACCESS_COOKIE, tokens.access_token,
        max_age=tokens.expires_in, httponly=True, secure=secure, samesite="lax"
    )
    response.set_cookie(
        REFRESH_COOKIE, tokens.refresh_token,
        max_age=REFRESH_COOKIE_MAX_AGE, httponly=True, secure=secure, samesite="lax"
    )


def clear_session_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)


async def _refresh(provider, refresh_token: str) -> AuthResolution:
    try:
        tokens, identity = await provider.refresh_session(refresh_token)
    except IdentityError as e:
        logger.info(f"Session refresh failed: {e}")
        return AuthResolution(clear_cookies=True)
    return AuthResolution(
        identity=identity,
        source="cookie",
        access_token=tokens.access_token,
        refreshed=tokens
    )


async def resolve_identity(request: Request, provider) -> AuthResolution:
    """Resolve who is calling. Never raises for bad credentials; check .authenticated."""
    token = bearer_token(request)
    if request.headers.get("authorization") and not token:
        logger.info("Malformed authorization header rejected")
        return AuthResolution()
    if token:
        try:
            identity = await provider.get_user(token)
        except IdentityError as e:
            logger.info(f"Bearer credential rejected: {e}")
            return AuthResolution()
        return AuthResolution(identity=identity, source="header", access_token=token)

    access_token = request.cookies.get(ACCESS_COOKIE)
    refresh_token = request.cookies.get(REFRESH_COOKIE)

    if access_token and not token_expired(access_token):
        try:
            identity = await provider.get_user(access_token)
            return AuthResolution(identity=identity, source="cookie", access_token=access_token)
        except IdentityError as e:
            logger.info(f"Cookie session rejected: {e}")

    if refresh_token:
        return await _refresh(provider, refresh_token)

    return AuthResolution(clear_cookies=bool(access_token))


async def resolve_request_auth(request: Request) -> AuthResolution:
    """Resolve once per request; later callers reuse the cached result"""
    cached = getattr(request.state, "auth", None)
    if cached is not None:
        return cached
    resolution = await resolve_identity(request, request.app.state.identity_provider)
    request.state.auth = resolution
    return resolution


async def get_current_identity(request: Request) -> Identity:
    """Dependency: the verified caller, or 401"""
    resolution = await resolve_request_auth(request)
    if not resolution.authenticated:
        raise Unauthenticated()
    return resolution.identity
