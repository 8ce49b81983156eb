"""
Environment configuration.

All secrets come from the environment (or a .env file next to this package).
Missing required values fail app creation instead of degrading at request time.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, EmailStr, Field

from portal_backend.errors import ConfigurationError

ROOT_DIR = Path(__file__).parent

REQUIRED_VARIABLES = [
    "MONGO_URL",
    "DB_NAME",
    "AUTH_URL",
    "AUTH_PUBLIC_KEY",
    "GOOGLE_CLIENT_EMAIL",
    "GOOGLE_PRIVATE_KEY",
    "LLM_API_KEY",
]


class Settings(BaseModel):
    mongo_url: str
    db_name: str

    # Identity provider
    auth_url: str
    auth_public_key: str

    # File storage service account
    google_client_email: EmailStr
    google_private_key: str

    # Generative AI
    llm_api_key: str
    llm_model: str = "gpt-4o-mini"

    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    panic_mode: bool = False
    upstream_timeout: float = 30.0
    secure_cookies: bool = True
    restricted_prefixes: list[str] = Field(default_factory=lambda: ["/crm", "/talent", "/ops"])
    safe_default_path: str = "/portal"
    audit_reviewer_emails: list[str] = Field(default_factory=list)
    log_level: str = "INFO"

    # Edge restrictions, off unless configured
    enforce_https: bool = False
    geo_restriction_enabled: bool = False
    allowed_countries: list[str] = Field(default_factory=lambda: ["NL", "PH"])
    whitelisted_ips: list[str] = Field(default_factory=list)


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _flag(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "t", "yes")


def load_settings(environ: Optional[dict] = None) -> Settings:
    """Build Settings from the environment, failing fast on missing secrets"""
    if environ is None:
        load_dotenv(ROOT_DIR / '.env')
        environ = os.environ

    missing = [name for name in REQUIRED_VARIABLES if not environ.get(name, "").strip()]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    values = {
        "mongo_url": environ["MONGO_URL"],
        "db_name": environ["DB_NAME"],
        "auth_url": environ["AUTH_URL"].rstrip("/"),
        "auth_public_key": environ["AUTH_PUBLIC_KEY"],
        "google_client_email": environ["GOOGLE_CLIENT_EMAIL"],
        # Keys pasted into env files carry escaped newlines
        "google_private_key": environ["GOOGLE_PRIVATE_KEY"].replace("\\n", "\n"),
        "llm_api_key": environ["LLM_API_KEY"],
    }
    if environ.get("LLM_MODEL"):
        values["llm_model"] = environ["LLM_MODEL"]
    if environ.get("CORS_ORIGINS"):
        values["cors_origins"] = _split(environ["CORS_ORIGINS"])
    if environ.get("PANIC_MODE"):
        values["panic_mode"] = _flag(environ["PANIC_MODE"])
    if environ.get("SECURE_COOKIES"):
        values["secure_cookies"] = _flag(environ["SECURE_COOKIES"])
    if environ.get("RESTRICTED_PREFIXES"):
        values["restricted_prefixes"] = _split(environ["RESTRICTED_PREFIXES"])
    if environ.get("SAFE_DEFAULT_PATH"):
        values["safe_default_path"] = environ["SAFE_DEFAULT_PATH"]
    if environ.get("AUDIT_REVIEWER_EMAILS"):
        values["audit_reviewer_emails"] = [e.lower() for e in _split(environ["AUDIT_REVIEWER_EMAILS"])]
    if environ.get("LOG_LEVEL"):
        values["log_level"] = environ["LOG_LEVEL"].upper()
    if environ.get("ENFORCE_HTTPS"):
        values["enforce_https"] = _flag(environ["ENFORCE_HTTPS"])
    if environ.get("GEO_RESTRICTION_ENABLED"):
        values["geo_restriction_enabled"] = _flag(environ["GEO_RESTRICTION_ENABLED"])
    if environ.get("ALLOWED_COUNTRIES"):
        values["allowed_countries"] = [c.upper() for c in _split(environ["ALLOWED_COUNTRIES"])]
    if environ.get("WHITELISTED_IPS"):
        values["whitelisted_ips"] = _split(environ["WHITELISTED_IPS"])

    timeout = environ.get("UPSTREAM_TIMEOUT_SECONDS")
    if timeout:
        try:
            values["upstream_timeout"] = float(timeout)
        except ValueError:
            raise ConfigurationError(f"UPSTREAM_TIMEOUT_SECONDS must be a number, got {timeout!r}")

    try:
        return Settings(**values)
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration: {e}")
