#!/usr/bin/env python3
"""Run the background job sweep on an interval, as the scheduler would.

    python scripts/sweep_jobs.py --interval 60
    python scripts/sweep_jobs.py --once
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from toolcredits.auth import Caller
from toolcredits.db import SessionLocal
from toolcredits.services.app_settings import build_render_providers
from toolcredits.services.jobs import JobPoller

logger = logging.getLogger("sweep_jobs")

async def sweep_once():
    db = SessionLocal()
    try:
        result = await JobPoller(db, build_render_providers(db)).sweep(Caller(is_service=True))
        logger.info(f"Sweep finished: {result['processed']}/{result['total']} jobs reached a terminal state")
        return result
    finally:
        db.close()

async def main(interval: int, once: bool):
    while True:
        try:
            await sweep_once()
        except Exception:
            logger.exception("Sweep failed")
        if once:
            return
        await asyncio.sleep(interval)

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--interval", type=int, default=60, help="seconds between sweeps")
    parser.add_argument("--once", action="store_true")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    try:
        asyncio.run(main(args.interval, args.once))
    except KeyboardInterrupt:
        sys.exit(0)
