"""
Grant bookkeeping stored in Service annotations.

Each temporary grant is one annotation:

    service.caretaker.ipaddr.<iprange>: "YYYY-MM-DD HH:MM:SS"

The value is the expiry deadline. Deadlines are fixed-width and zero-padded,
so comparing two of them as strings gives the same answer as comparing the
times they encode, provided both were formatted in the same time zone.
A Service is only touched when it carries the ``service.caretaker.ipautomanaged``
annotation (any value).
"""

import os
import logging
from datetime import datetime, timedelta
from typing import Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from kubernetes import client

logger = logging.getLogger("caretaker.annotations")

MGMT_ANNOTATION       = "service.caretaker.ipautomanaged"
ANNOTATION_KEY_PREFIX = "service.caretaker.ipaddr"
DEADLINE_FORMAT       = "%Y-%m-%d %H:%M:%S"
GRANT_TTL             = timedelta(days=2)

# Unset → process local time. Set it on both webui and controller when they
# may run with different TZ settings, otherwise deadlines won't compare.
_tz_name = os.environ.get("DEADLINE_TIMEZONE", "")
DEADLINE_TZ: ZoneInfo | None = None
if _tz_name:
    try:
        DEADLINE_TZ = ZoneInfo(_tz_name)
    except ZoneInfoNotFoundError:
        logger.warning(f"⚠️  Unknown DEADLINE_TIMEZONE '{_tz_name}', falling back to local time")


def _now() -> datetime:
    return datetime.now(DEADLINE_TZ)


def format_deadline(dt: datetime) -> str:
    if DEADLINE_TZ is not None and dt.tzinfo is not None:
        dt = dt.astimezone(DEADLINE_TZ)
    return dt.strftime(DEADLINE_FORMAT)


def annotation_key(iprange: str) -> str:
    return f"{ANNOTATION_KEY_PREFIX}.{iprange}"


def _annotations(service: client.V1Service) -> dict:
    if service.metadata is None:
        service.metadata = client.V1ObjectMeta()
    if service.metadata.annotations is None:
        service.metadata.annotations = {}
    return service.metadata.annotations


def is_auto_managed(service: client.V1Service) -> bool:
    annotations = (service.metadata.annotations if service.metadata else None) or {}
    return MGMT_ANNOTATION in annotations


def stamp(iprange: str, service: client.V1Service, now: datetime | None = None) -> str:
    """Record an expiry deadline for ``iprange`` on the service and return it."""
    deadline = format_deadline((now or _now()) + GRANT_TTL)
    _annotations(service)[annotation_key(iprange)] = deadline
    return deadline


def erase(iprange: str, service: client.V1Service) -> None:
    _annotations(service).pop(annotation_key(iprange), None)


def iter_rules(service: client.V1Service) -> Iterator[tuple[str, str]]:
    """Yield (iprange, deadline) for every grant annotation on the service."""
    annotations = (service.metadata.annotations if service.metadata else None) or {}
    prefix = f"{ANNOTATION_KEY_PREFIX}."
    # Copy: callers erase annotations while iterating.
    for key, value in list(annotations.items()):
        if key.startswith(prefix):
            yield key[len(prefix):], value


def is_expired(deadline: str, now: datetime | None = None) -> bool:
    return deadline < format_deadline(now or _now())
