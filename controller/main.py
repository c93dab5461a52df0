import os
import asyncio
import logging
from datetime import datetime, timezone

import kopf

from shared.k8s import ResourceGateway
from controller.sweeper import sweep_once

# ---------------------------------------------------------------------------
# Configuration from environment
# ---------------------------------------------------------------------------
SWEEP_INTERVAL_SECONDS = int(os.environ.get("SWEEP_INTERVAL_SECONDS", "30"))
CONFLICT_RETRIES = int(os.environ.get("CONFLICT_RETRIES", "0"))

logger = logging.getLogger("caretaker-controller")


class _HealthzFilter(logging.Filter):
    def filter(self, record):
        return "GET /healthz" not in record.getMessage()


logging.getLogger("aiohttp.access").addFilter(_HealthzFilter())


SEP = "⚡" * 30

_state: dict = {"task": None, "last_sweep": None}


async def _expiry_sweep_loop(gateway: ResourceGateway, interval: int = SWEEP_INTERVAL_SECONDS):
    """Background task: withdraw expired grants from every opt-in Service."""
    while True:
        await asyncio.sleep(interval)
        try:
            stats = sweep_once(gateway, retries=CONFLICT_RETRIES)
            if not stats.skipped:
                _state["last_sweep"] = datetime.now(timezone.utc).isoformat()
            if stats.revoked or stats.orphaned or stats.failed:
                logger.info(SEP)
                logger.info(f"🧹 [sweep] done — scanned={stats.scanned} revoked={stats.revoked} orphaned={stats.orphaned} failed={stats.failed}")
        except Exception as e:
            logger.error(f"💥 [sweep] loop iteration failed: {type(e).__name__}: {e}")


@kopf.on.startup()
async def startup(**kwargs):
    logger.info(f"🚀 caretaker controller starting up (sweep every {SWEEP_INTERVAL_SECONDS}s)")
    gateway = ResourceGateway.from_environment()
    _state["task"] = asyncio.create_task(_expiry_sweep_loop(gateway))
    logger.info("✅ caretaker controller ready")


@kopf.on.cleanup()
async def cleanup(**kwargs):
    task = _state["task"]
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        _state["task"] = None
    logger.info("👋 caretaker controller stopped")


@kopf.on.probe(id="last_sweep")
def last_sweep(**kwargs):
    return _state["last_sweep"]
