"""
CLI tool to run one execution sync (or a backfill) immediately.

Usage:
    python scripts/run_sync.py                       # all agents
    python scripts/run_sync.py --agent <remote_id>   # one agent
    python scripts/run_sync.py --backfill <owner_id> # re-run extraction for stored calls
"""

import argparse
import asyncio
import json
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from src.logging_config import setup_logging, get_logger
from src.services.service_factory import ServiceFactory

setup_logging()
logger = get_logger(__name__)


async def run(agent: str | None, backfill_owner: str | None) -> None:
    services = ServiceFactory.create_services()
    try:
        if backfill_owner:
            report = await services.orchestrator.backfill(backfill_owner)
            print(json.dumps(report.model_dump(), indent=2))
        elif agent:
            result = await services.orchestrator.sync_agent_by_remote_id(agent)
            if result is None:
                logger.error("Agent is not tracked", remote_agent_id=agent)
                sys.exit(1)
            print(json.dumps(result.model_dump(mode="json"), indent=2))
        else:
            report = await services.orchestrator.sync_all()
            print(json.dumps(report.summary(), indent=2))
    finally:
        await services.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run an execution sync now")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--agent", help="Remote agent id to sync")
    group.add_argument("--backfill", metavar="OWNER_ID", help="Backfill extraction for an owner")
    args = parser.parse_args()

    asyncio.run(run(args.agent, args.backfill))
