"""
Request-scoped data access over MongoDB.

A MongoStore wraps the shared motor database handle for a single request.
The security log has exactly one write path, log_security_event; nothing in
this module updates or deletes an audit document.
"""
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

logger = logging.getLogger(__name__)

SEVERITIES = ("info", "warning", "critical")


def contains_filter(value: str) -> dict:
    """Case-insensitive substring match on a string field"""
    return {"$regex": re.escape(value), "$options": "i"}


class MongoStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    # ============ PROFILES & ACCOUNTS ============

    async def get_profile(self, user_id: str) -> Optional[dict]:
        return await self.db.profiles.find_one({"id": user_id}, {"_id": 0})

    async def get_account(self, client_id: str) -> Optional[dict]:
        return await self.db.clients.find_one({"client_id": client_id}, {"_id": 0})

    async def account_references_file(self, file_id: str, client_id: Optional[str] = None) -> bool:
        """True if an account's contract_url contains file_id, limited to client_id when given"""
        query = {"contract_url": contains_filter(file_id)}
        if client_id is not None:
            query["client_id"] = client_id
        match = await self.db.clients.find_one(query, {"_id": 0, "client_id": 1})
        return match is not None

    # ============ SECURITY LOG ============

    async def log_security_event(
        self,
        event_type: str,
        user_id: Optional[str],
        metadata: Optional[dict] = None,
        severity: str = "info"
    ) -> dict:
        """Append one security event. The only sanctioned write to security_logs."""
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")

        event = {
            "event_id": f"sec_{uuid.uuid4().hex[:12]}",
            "event_type": event_type,
            "user_id": user_id,
            "metadata": metadata or {},
            "severity": severity,
            "created_at": datetime.now(timezone.utc).isoformat()
        }
        await self.db.security_logs.insert_one(dict(event))
        return event

    async def count_security_events(self, user_id: str, event_type: str, since: datetime) -> int:
        return await self.db.security_logs.count_documents({
            "user_id": user_id,
            "event_type": event_type,
            "created_at": {"$gte": since.isoformat()}
        })

    async def list_security_events(
        self,
        limit: int = 100,
        event_type: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> list[dict]:
        query = {}
        if event_type:
            query["event_type"] = event_type
        if user_id:
            query["user_id"] = user_id
        return await self.db.security_logs.find(query, {"_id": 0}).sort("created_at", -1).limit(limit).to_list(limit)

    # ============ CANDIDATE DOCUMENTS ============

    async def save_parsed_resume(
        self,
        file_id: str,
        candidate_id: str,
        file_name: Optional[str],
        parsed_data: dict
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.candidate_documents.update_one(
            {"file_id": file_id},
            {
                "$set": {
                    "parsing_status": "completed",
                    "parsed_at": now,
                    "parsed_data": parsed_data,
                    "updated_at": now
                },
                "$setOnInsert": {
                    "candidate_id": candidate_id,
                    "file_id": file_id,
                    "document_type": "resume",
                    "file_name": file_name or "Linked Resume"
                }
            },
            upsert=True
        )
