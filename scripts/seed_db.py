"""
Database Seeding Script.

Populates the ``owners``, ``agents`` and ``extraction_fields`` tables
with a sample dashboard owner for local testing against Supabase.

Usage:
    python scripts/seed_db.py <remote_agent_id>
"""

import asyncio
import os
import sys

# Add project root to path so we can import src
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from src.db import SupabaseStore
from src.services.platform_client import PlatformClient
from src.logging_config import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

SAMPLE_OWNER = {
    "name": "Demo Clinic Outreach",
    "email": "demo@example.com",
    "google_authorized": False,
}

SAMPLE_FIELDS = [
    {"field_name": "Doctor_Name", "description": "Full name of the doctor the agent spoke with", "order": 0},
    {"field_name": "Clinic_Name", "description": "Name of the clinic or hospital", "order": 1},
    {"field_name": "Phone_Number", "description": "Callback phone number, with country code if given", "order": 2},
    {"field_name": "Email", "description": "Email address mentioned on the call", "order": 3},
    {"field_name": "City", "description": "City where the clinic is located", "order": 4},
]


async def seed(remote_agent_id: str) -> None:
    db = SupabaseStore.from_settings()

    logger.info("Seeding database...")

    existing = db.client.table("owners").select("id").eq("email", SAMPLE_OWNER["email"]).execute()
    if existing.data:
        owner_id = existing.data[0]["id"]
        logger.info("Owner already exists", id=owner_id)
    else:
        owner_id = db.client.table("owners").insert(SAMPLE_OWNER).execute().data[0]["id"]
        logger.info("Created owner", id=owner_id)

    agent = await db.get_agent_by_remote_id(remote_agent_id)
    if agent:
        logger.info("Agent already tracked", remote_agent_id=remote_agent_id)
    else:
        platform = PlatformClient()
        try:
            verification = await platform.verify_agent(remote_agent_id)
        finally:
            await platform.close()
        if not verification.exists:
            logger.error("Agent not found on platform", remote_agent_id=remote_agent_id)
            sys.exit(1)

        db.client.table("agents").insert({
            "remote_agent_id": remote_agent_id,
            "owner_id": owner_id,
            "name": verification.agent_name or "Demo Agent",
        }).execute()
        logger.info("Created agent", remote_agent_id=remote_agent_id)

    for field in SAMPLE_FIELDS:
        db.client.table("extraction_fields").upsert(
            {**field, "owner_id": owner_id, "is_active": True},
            on_conflict="owner_id,field_name",
        ).execute()

    logger.info("Seeding complete.", fields=len(SAMPLE_FIELDS))


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print(__doc__)
        sys.exit(1)
    asyncio.run(seed(sys.argv[1]))
