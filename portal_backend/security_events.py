"""
Security event logging.

Writes go through the store's log_security_event and nowhere else. A failed
write is logged here and reported as False; it never reaches the request
that triggered it. Callers schedule these coroutines as response background
tasks so the audit write never delays the response.
"""
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from starlette.background import BackgroundTask
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

# A user with this many recent denials gets their next one logged as critical
DENIAL_ESCALATION_THRESHOLD = 4
DENIAL_WINDOW = timedelta(minutes=10)
GROUPING_WINDOW = timedelta(hours=1)


class SecurityEventLogger:
    def __init__(self, store):
        self.store = store

    async def log_event(
        self,
        event_type: str,
        user_id: Optional[str],
        metadata: Optional[dict] = None,
        severity: str = "info"
    ) -> bool:
        """Append an audit event; returns False instead of raising on failure"""
        try:
            await self.store.log_security_event(event_type, user_id, metadata or {}, severity)
        except Exception:
            logger.exception(f"Failed to write security event {event_type} for {user_id}")
            return False
        logger.info(f"[AUDIT] {event_type} ({severity}) by {user_id}")
        return True

    async def log_denial(self, user_id: str, metadata: dict) -> bool:
        """Record a denied access attempt, escalating repeat offenders to critical"""
        severity = "warning"
        try:
            since = datetime.now(timezone.utc) - DENIAL_WINDOW
            recent = await self.store.count_security_events(user_id, "access_denied", since)
            if recent >= DENIAL_ESCALATION_THRESHOLD:
                severity = "critical"
        except Exception:
            logger.exception(f"Failed to count recent denials for {user_id}")
        return await self.log_event("access_denied", user_id, metadata, severity)


def denied_response(events: SecurityEventLogger, user_id: str, metadata: dict, detail: str = "Access denied") -> JSONResponse:
    """403 body with the denial audit write attached as a background task"""
    logger.warning(f"[SECURITY] Access denied for {user_id}: {metadata}")
    return JSONResponse(
        status_code=403,
        content={"error": detail},
        background=BackgroundTask(events.log_denial, user_id, metadata)
    )


def _parse_time(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def group_security_events(events: list[dict], window: timedelta = GROUPING_WINDOW) -> list[dict]:
    """
    Collapse runs of identical consecutive events (newest first) into one entry.

    Events group when user, type, severity and metadata match and the event is
    within `window` of the group's first (newest) entry. Critical events always
    stand alone.
    """
    grouped = []
    current = None

    for event in events:
        if current is None:
            current = {**event, "count": 1}
            continue

        head_time = _parse_time(current.get("created_at"))
        event_time = _parse_time(event.get("created_at"))
        recent = (
            head_time is not None and event_time is not None
            and head_time - event_time < window
        )
        same = (
            event.get("user_id") == current.get("user_id")
            and event.get("event_type") == current.get("event_type")
            and event.get("severity") == current.get("severity")
            and json.dumps(event.get("metadata"), sort_keys=True) == json.dumps(current.get("metadata"), sort_keys=True)
        )

        if event.get("severity") != "critical" and same and recent:
            current["count"] += 1
        else:
            grouped.append(current)
            current = {**event, "count": 1}

    if current is not None:
        grouped.append(current)
    return grouped
