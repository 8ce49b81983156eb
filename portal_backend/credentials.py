"""
Credentials for the file-storage provider.

Two kinds: a service-account token minted per request with an explicit
scope, and a delegated end-user token that the caller supplies (we only
check that it is well formed, never mint one).
"""
import logging
import re

import google.auth.exceptions
import google.auth.transport.requests
from google.oauth2 import service_account
from starlette.concurrency import run_in_threadpool

from portal_backend.errors import BadRequest, ConfigurationError, InternalError

logger = logging.getLogger(__name__)

DRIVE_READONLY_SCOPE = "https://www.googleapis.com/auth/drive.readonly"
DRIVE_FILE_SCOPE = "https://www.googleapis.com/auth/drive.file"
TOKEN_URI = "https://oauth2.googleapis.com/token"

DELEGATED_TOKEN_PATTERN = re.compile(r"^[\x21-\x7e]{1,4096}$")


class CredentialExchange:
    def __init__(self, client_email: str, private_key: str):
        self.client_email = client_email
        self.private_key = private_key

    def service_credentials(self, scopes: list[str]) -> service_account.Credentials:
        if not self.client_email or not self.private_key:
            raise ConfigurationError("Service account credentials are not configured")
        return service_account.Credentials.from_service_account_info(
            {
                "type": "service_account",
                "client_email": self.client_email,
                "private_key": self.private_key,
                "token_uri": TOKEN_URI,
            },
            scopes=scopes
        )

    async def service_token(self, scopes: list[str] = None) -> str:
        """Fresh service-account access token for the given scopes"""
        scopes = scopes or [DRIVE_READONLY_SCOPE]
        try:
            creds = self.service_credentials(scopes)
            await run_in_threadpool(creds.refresh, google.auth.transport.requests.Request())
        except (ConfigurationError, ValueError, google.auth.exceptions.GoogleAuthError) as e:
            logger.error(f"Service account token exchange failed: {e}")
            raise InternalError("Failed to fetch file")
        if not creds.token:
            logger.error("Service account token exchange returned no token")
            raise InternalError("Failed to fetch file")
        return creds.token

    @staticmethod
    def delegated_token(raw_token) -> str:
        """Validate a caller-supplied end-user token before acting as that user"""
        if not isinstance(raw_token, str) or not DELEGATED_TOKEN_PATTERN.match(raw_token):
            raise BadRequest("Malformed access token")
        return raw_token
