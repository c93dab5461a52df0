"""
One pass of the expiry sweep.

Every opt-in Service is re-read from the API server, each grant annotation is
checked against the current time, and expired grants are withdrawn from
``loadBalancerSourceRanges`` together with their annotation. Nothing is kept
between passes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from kubernetes import client

from shared.annotations import erase, is_auto_managed, is_expired, iter_rules
from shared.audit import audit
from shared.errors import CaretakerError, RuleNotFoundError
from shared.k8s import ResourceGateway
from shared.whitelist import remove_source_range

logger = logging.getLogger("caretaker-controller")


@dataclass
class SweepStats:
    scanned: int = 0
    revoked: int = 0
    orphaned: int = 0
    failed: int = 0
    skipped: bool = False


def _revoke(iprange: str):
    def _mutate(service: client.V1Service) -> bool:
        """Returns False when the range was already missing from the allow-list."""
        try:
            service.spec.load_balancer_source_ranges = remove_source_range(
                service.spec.load_balancer_source_ranges, iprange
            )
            present = True
        except RuleNotFoundError:
            present = False
        erase(iprange, service)
        return present
    return _mutate


def sweep_service(gateway: ResourceGateway, service: client.V1Service, stats: SweepStats,
                  now: datetime | None = None, retries: int = 0) -> None:
    name = service.metadata.name
    namespace = service.metadata.namespace
    for iprange, deadline in iter_rules(service):
        if not is_expired(deadline, now):
            logger.debug(f"⏳ Rule for {iprange} on {namespace}/{name} has not expired yet ({deadline})")
            continue
        logger.info(f"⌛ Time to remove rule {iprange} from {namespace}/{name} (deadline {deadline})")
        try:
            present, service = gateway.read_modify_write(
                name, namespace, _revoke(iprange), service=service, retries=retries,
            )
        except Exception as e:
            stats.failed += 1
            logger.error(f"💥 Failed to remove {iprange} from {namespace}/{name}: {type(e).__name__}: {e}")
            continue
        if present:
            stats.revoked += 1
            logger.info(f"🗑️  Removed {iprange} from {namespace}/{name}")
            audit("grant.expired", f"{namespace}/{name}", address=iprange, deadline=deadline)
        else:
            stats.orphaned += 1
            logger.warning(f"👻 {iprange} was not whitelisted on {namespace}/{name} — erased orphaned annotation")
            audit("grant.orphaned", f"{namespace}/{name}", address=iprange, deadline=deadline)


def sweep_once(gateway: ResourceGateway, now: datetime | None = None, retries: int = 0) -> SweepStats:
    stats = SweepStats()
    try:
        services = gateway.list_services()
    except CaretakerError as e:
        logger.error(f"💥 Could not list services, skipping this sweep: {e}")
        stats.skipped = True
        return stats

    for service in services:
        if not is_auto_managed(service):
            continue
        stats.scanned += 1
        try:
            sweep_service(gateway, service, stats, now=now, retries=retries)
        except Exception as e:
            stats.failed += 1
            logger.error(f"💥 Sweep of {service.metadata.namespace}/{service.metadata.name} failed: "
                         f"{type(e).__name__}: {e}")
        logger.debug(f"✔️  Finished checking rules for {service.metadata.namespace}/{service.metadata.name}")
    return stats
