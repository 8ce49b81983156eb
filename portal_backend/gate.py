"""
Edge gate: runs before any route.

Per request: kill switch, optional geo restriction and HTTPS redirect,
identity resolution (once; handlers reuse it), then a redirect/allow
decision for page navigation. API paths only get the
authentication check here. Role checks for APIs happen in the handlers,
which fail closed on a missing profile, while this gate treats a missing
profile as the least-privileged role since the worst outcome is a redirect.
"""
import logging
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, PlainTextResponse, RedirectResponse

from portal_backend.authorization import ProfileNotFound, resolve_profile
from portal_backend.identity import resolve_request_auth

logger = logging.getLogger(__name__)

PUBLIC_ROOT = "/"
API_PREFIX = "/api"
EXEMPT_PREFIXES = ("/auth", "/api/health")
LEAST_PRIVILEGED_ROLE = "client"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "; ".join([
        "default-src 'self'",
        "img-src 'self' data: blob:",
        "frame-src 'self' blob:",
        "font-src 'self' data:",
        "object-src 'none'",
        "base-uri 'self'",
        "form-action 'self'",
        "frame-ancestors 'none'",
    ]),
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


class GateDecision:
    ALLOW = "allow"
    REDIRECT = "redirect"
    REJECT = "reject"

    def __init__(self, outcome: str, target: Optional[str] = None):
        self.outcome = outcome
        self.target = target

    def __repr__(self):
        return f"GateDecision({self.outcome!r}, {self.target!r})"


def decide(path: str, authenticated: bool, role: Optional[str], restricted_prefixes, safe_default: str) -> GateDecision:
    """Pure navigation policy for one request"""
    is_api = _under(path, API_PREFIX)

    if not authenticated:
        if path == PUBLIC_ROOT:
            return GateDecision(GateDecision.ALLOW)
        if is_api:
            return GateDecision(GateDecision.REJECT)
        return GateDecision(GateDecision.REDIRECT, PUBLIC_ROOT)

    if not is_api and role == LEAST_PRIVILEGED_ROLE:
        if any(_under(path, prefix) for prefix in restricted_prefixes):
            return GateDecision(GateDecision.REDIRECT, safe_default)

    return GateDecision(GateDecision.ALLOW)


async def navigation_role(store, user_id: str) -> str:
    try:
        profile = await resolve_profile(store, user_id)
    except ProfileNotFound:
        return LEAST_PRIVILEGED_ROLE
    return profile.role


def client_ip(request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


def request_country(request) -> Optional[str]:
    country = request.headers.get("x-vercel-ip-country") or request.headers.get("cf-ipcountry")
    return country.strip().upper() if country else None


def geo_block(request, settings) -> Optional[JSONResponse]:
    """403 for a request from outside the allowed countries; unknown origin passes"""
    ip = client_ip(request)
    if ip in settings.whitelisted_ips:
        return None

    country = request_country(request)
    if country is None or country in settings.allowed_countries:
        return None

    logger.warning(f"Geo block: {country} (ip={ip}) {request.url.path}")
    return JSONResponse(
        status_code=403,
        content={
            "error": "Access Denied",
            "message": "Access is only allowed from authorized regions."
        },
        headers={"X-Geo-Blocked": "true", "X-Blocked-Country": country}
    )


def https_redirect(request) -> Optional[RedirectResponse]:
    if request.headers.get("x-forwarded-proto") == "https":
        return None
    return RedirectResponse(url=str(request.url.replace(scheme="https")), status_code=307)


class RequestGate(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        settings = request.app.state.settings

        if settings.panic_mode:
            return self._secure(PlainTextResponse("System lockdown in effect. Access revoked.", status_code=503))

        if settings.geo_restriction_enabled:
            blocked = geo_block(request, settings)
            if blocked is not None:
                return self._secure(blocked)

        if settings.enforce_https:
            redirect = https_redirect(request)
            if redirect is not None:
                return self._secure(redirect)

        path = request.url.path
        if any(_under(path, prefix) for prefix in EXEMPT_PREFIXES):
            response = await call_next(request)
            return self._secure(response)

        auth = await resolve_request_auth(request)

        role = None
        if auth.authenticated and not _under(path, API_PREFIX):
            store = request.app.state.store_factory()
            role = await navigation_role(store, auth.identity.user_id)

        decision = decide(
            path, auth.authenticated, role,
            settings.restricted_prefixes, settings.safe_default_path
        )

        if decision.outcome == GateDecision.REJECT:
            response = JSONResponse(
                status_code=401,
                content={"error": "Unauthorized"},
                headers={"WWW-Authenticate": "Bearer"}
            )
        elif decision.outcome == GateDecision.REDIRECT:
            logger.info(f"Gate redirect {path} -> {decision.target} (role={role})")
            response = RedirectResponse(url=decision.target, status_code=307)
        else:
            response = await call_next(request)

        auth.apply_cookies(response, secure=settings.secure_cookies)
        return self._secure(response)

    @staticmethod
    def _secure(response):
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response
