"""
Apply one whitelist request to the cluster.

domain → Ingress → ingress controller Service → loadBalancerSourceRanges + deadline
annotation → replace. The Service is re-read for every request; nothing is cached.
"""

import os
import logging

from kubernetes import client

from shared.annotations import is_auto_managed, stamp
from shared.audit import audit
from shared.errors import CaretakerError, NotManagedError, UnsupportedBackendError
from shared.k8s import ResourceGateway
from shared.whitelist import add_source_range

logger = logging.getLogger("caretaker-webui")

INGRESS_CLASS                = os.environ.get("INGRESS_CLASS", "nginx")
INGRESS_CONTROLLER_SERVICE   = os.environ.get("INGRESS_CONTROLLER_SERVICE", "ingress-nginx")
INGRESS_CONTROLLER_NAMESPACE = os.environ.get("INGRESS_CONTROLLER_NAMESPACE", "default")
CONFLICT_RETRIES             = int(os.environ.get("CONFLICT_RETRIES", "0"))

_INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"


def ingress_class_of(ing: client.V1Ingress) -> str:
    annotations = (ing.metadata.annotations if ing.metadata else None) or {}
    if annotations.get(_INGRESS_CLASS_ANNOTATION):
        return annotations[_INGRESS_CLASS_ANNOTATION]
    return (ing.spec.ingress_class_name if ing.spec else None) or ""


def _backend_service_name(ing: client.V1Ingress) -> str:
    # Informational only: the controller Service is what gets whitelisted.
    try:
        return ing.spec.rules[0].http.paths[0].backend.service.name
    except (AttributeError, IndexError, TypeError):
        return ""


def resolve_controller_service(ing: client.V1Ingress) -> tuple[str, str]:
    """Return (name, namespace) of the Service that fronts ``ing``."""
    ing_class = ingress_class_of(ing)
    if ing_class != INGRESS_CLASS:
        raise UnsupportedBackendError(ing_class)
    # TODO: discover the controller Service from the IngressClass instead of fixed name/namespace
    return INGRESS_CONTROLLER_SERVICE, INGRESS_CONTROLLER_NAMESPACE


def apply_request(gateway: ResourceGateway, domain: str, address: str, retries: int | None = None) -> str:
    """Whitelist ``address`` on the Service behind ``domain`` and return the deadline."""
    retries = CONFLICT_RETRIES if retries is None else retries
    logger.info(f"📥 Received ip address {address} for access to domain {domain}")
    try:
        ing = gateway.find_ingress_for_host(domain)
        logger.info(f"🔎 Ingress {ing.metadata.namespace}/{ing.metadata.name} "
                    f"(backend service: {_backend_service_name(ing) or 'n/a'})")
        name, namespace = resolve_controller_service(ing)

        def _grant(service: client.V1Service) -> str:
            if not is_auto_managed(service):
                raise NotManagedError(name, namespace)
            service.spec.load_balancer_source_ranges = add_source_range(
                service.spec.load_balancer_source_ranges, address
            )
            return stamp(address, service)

        deadline, _ = gateway.read_modify_write(name, namespace, _grant, retries=retries)
    except CaretakerError as e:
        logger.warning(f"🚫 Request for {address} → {domain} rejected: {e}")
        audit("grant.rejected", domain, address=address, error=str(e), kind=type(e).__name__)
        raise

    logger.info(f"✅ Successfully applied {address} to service {namespace}/{name} for {domain}, expires {deadline}")
    audit("grant.applied", f"{namespace}/{name}", domain=domain, address=address, deadline=deadline)
    return deadline
