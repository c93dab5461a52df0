import json
import logging
from datetime import datetime, timezone

audit_logger = logging.getLogger("caretaker-audit")


def audit(event: str, target: str, **kwargs):
    """Emit a structured audit log line."""
    audit_logger.info(json.dumps({
        "audit": True,
        "event": event,
        "target": target,
        "ts": datetime.now(timezone.utc).isoformat(),
        **kwargs,
    }))
