#!/usr/bin/env python3
"""
Seed profiles and client accounts for local portal testing.

User ids must match the subject ids issued by the identity provider, so
pass them in: seed_profiles.py <internal_user_id> <client_user_id>
"""
import asyncio
import sys
from pathlib import Path

from motor.motor_asyncio import AsyncIOMotorClient
import os
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent / 'portal_backend'
load_dotenv(ROOT_DIR / '.env')

mongo_url = os.environ['MONGO_URL']
db_name = os.environ['DB_NAME']

TEST_ACCOUNTS = [
    {
        "client_id": "client_001",
        "name": "Acme Corporation",
        "contract_url": "https://drive.google.com/file/d/1AcmeContractFileId001/view?usp=sharing",
        "created_at": "2025-01-01T00:00:00"
    },
    {
        "client_id": "client_002",
        "name": "Globex Industries",
        "contract_url": "https://drive.google.com/file/d/1GlobexContractFileId002/view?usp=sharing",
        "created_at": "2025-01-01T00:00:00"
    }
]


async def seed(internal_user_id: str, client_user_id: str):
    """Seed accounts plus one internal and one client profile"""
    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    for account in TEST_ACCOUNTS:
        existing = await db.clients.find_one({"client_id": account["client_id"]})
        if existing:
            print(f"✓ Account {account['client_id']} already exists")
        else:
            await db.clients.insert_one(dict(account))
            print(f"✓ Created account: {account['name']} ({account['client_id']})")

    profiles = [
        {"id": internal_user_id, "role": "internal", "client_id": None},
        {"id": client_user_id, "role": "client", "client_id": "client_001"},
    ]
    for profile in profiles:
        result = await db.profiles.update_one({"id": profile["id"]}, {"$set": profile}, upsert=True)
        action = "Created" if result.upserted_id else "Updated"
        print(f"✓ {action} profile {profile['id']} (role: {profile['role']})")

    print("\n" + "="*60)
    print("PORTAL TEST DATA")
    print("="*60)
    print(f"\nInternal profile: {internal_user_id}")
    print(f"Client profile:   {client_user_id} -> client_001")
    print("\nContract file ids:")
    print("  client_001: 1AcmeContractFileId001")
    print("  client_002: 1GlobexContractFileId002")
    print("="*60)

    client.close()

if __name__ == "__main__":
    if len(sys.argv) != 3:
        print(__doc__)
        sys.exit(1)
    asyncio.run(seed(sys.argv[1], sys.argv[2]))
