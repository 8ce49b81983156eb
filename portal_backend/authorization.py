"""
Profile lookup and resource ownership checks.

A missing profile is its own outcome (ProfileNotFound), never a role value:
the navigation gate may choose a least-privileged default, but API handlers
refuse.
"""
import logging
import re

from fastapi import Depends, Request

from portal_backend.errors import BadRequest, Forbidden
from portal_backend.identity import get_current_identity
from portal_backend.models import Identity, Profile

logger = logging.getLogger(__name__)

FILE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,256}$")


class ProfileNotFound(Exception):
    def __init__(self, user_id: str):
        super().__init__(f"No profile for user {user_id}")
        self.user_id = user_id


async def resolve_profile(store, user_id: str) -> Profile:
    doc = await store.get_profile(user_id)
    if not doc:
        raise ProfileNotFound(user_id)
    if doc.get("role") not in ("internal", "client"):
        logger.warning(f"[SECURITY] Profile {user_id} has unknown role {doc.get('role')!r}")
        raise ProfileNotFound(user_id)
    return Profile(id=doc["id"], role=doc["role"], client_id=doc.get("client_id"))


async def is_authorized(store, profile: Profile, file_id: str) -> bool:
    """May this profile view the external file? Containment match on contract links."""
    if profile.is_internal:
        return await store.account_references_file(file_id)

    if not profile.client_id:
        return False
    return await store.account_references_file(file_id, client_id=profile.client_id)


def validate_drive_id(value, label: str = "fileId") -> str:
    """Drive ids are URL-safe tokens; anything else never reaches a query or URL"""
    if value is None or not str(value).strip():
        raise BadRequest(f"Missing {label}")
    value = str(value).strip()
    if not FILE_ID_PATTERN.match(value):
        raise BadRequest(f"Invalid {label}")
    return value


def validate_file_id(file_id) -> str:
    return validate_drive_id(file_id, "fileId")


# ============ DEPENDENCIES ============

def get_store(request: Request):
    """A fresh store wrapper for this request"""
    return request.app.state.store_factory()


async def get_current_profile(
    identity: Identity = Depends(get_current_identity),
    store=Depends(get_store)
) -> Profile:
    try:
        return await resolve_profile(store, identity.user_id)
    except ProfileNotFound:
        logger.warning(f"[SECURITY] No profile for authenticated user {identity.user_id}")
        raise Forbidden("Profile not found")


async def require_internal(profile: Profile = Depends(get_current_profile)) -> Profile:
    if not profile.is_internal:
        raise Forbidden("Internal staff only")
    return profile
