"""
Kubernetes access for caretaker.

Wraps the few CoreV1/NetworkingV1 calls the grant and sweep paths need behind
one object that is built once per process and passed around explicitly.
"""

import copy
import logging
from typing import Callable, TypeVar

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from shared.errors import CredentialError, DomainNotFoundError, PersistError, RemoteError

logger = logging.getLogger("caretaker.k8s")

T = TypeVar("T")


def load_credentials() -> None:
    """In-cluster service account first, then ~/.kube/config."""
    try:
        config.load_incluster_config()
        return
    except config.ConfigException as e:
        in_cluster_err = e
    try:
        config.load_kube_config()
    except config.ConfigException as e:
        logger.error(f"🔑 No usable credentials — in-cluster: {in_cluster_err}; kubeconfig: {e}")
        raise CredentialError(str(e)) from e


class ResourceGateway:
    def __init__(self, core_v1: client.CoreV1Api, networking_v1: client.NetworkingV1Api):
        self.core_v1 = core_v1
        self.networking_v1 = networking_v1

    @classmethod
    def from_environment(cls) -> "ResourceGateway":
        load_credentials()
        api_client = client.ApiClient()
        return cls(client.CoreV1Api(api_client=api_client), client.NetworkingV1Api(api_client=api_client))

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def get_service(self, name: str, namespace: str) -> client.V1Service:
        try:
            return self.core_v1.read_namespaced_service(name=name, namespace=namespace)
        except ApiException as e:
            raise RemoteError(name, namespace, e.status, e.reason or "") from e
        except HTTPError as e:
            raise RemoteError(name, namespace, None, str(e)) from e

    def list_services(self) -> list[client.V1Service]:
        try:
            return list(self.core_v1.list_service_for_all_namespaces().items or [])
        except ApiException as e:
            raise RemoteError("services", "", e.status, e.reason or "") from e
        except HTTPError as e:
            raise RemoteError("services", "", None, str(e)) from e

    def update_service(self, service: client.V1Service) -> client.V1Service:
        """Replace the whole Service object. Returns what the API server stored."""
        name = service.metadata.name
        namespace = service.metadata.namespace
        try:
            return self.core_v1.replace_namespaced_service(name=name, namespace=namespace, body=service)
        except ApiException as e:
            raise PersistError(name, namespace, e.status, e.reason or "") from e
        except HTTPError as e:
            # connection refused, timeouts, dropped connections
            raise PersistError(name, namespace, None, str(e)) from e

    def read_modify_write(
        self,
        name: str,
        namespace: str,
        mutate: Callable[[client.V1Service], T],
        service: client.V1Service | None = None,
        retries: int = 0,
    ) -> tuple[T, client.V1Service]:
        """Apply ``mutate`` to a private copy of the Service and persist it.

        ``service`` seeds the first attempt (otherwise it is fetched). Each of
        the ``retries`` extra attempts is only made after a 409 conflict and
        always starts from a freshly fetched object. Exceptions raised by
        ``mutate`` abort without any update. Returns (mutate's result, stored Service).
        """
        attempt = 0
        while True:
            current = service if service is not None and attempt == 0 else self.get_service(name, namespace)
            working = copy.deepcopy(current)
            result = mutate(working)
            try:
                return result, self.update_service(working)
            except PersistError as e:
                if not e.is_conflict or attempt >= retries:
                    raise
                attempt += 1
                logger.warning(f"🔁 Conflict updating service {namespace}/{name}, retry {attempt}/{retries}")

    # ------------------------------------------------------------------
    # Ingresses
    # ------------------------------------------------------------------

    def find_ingress_for_host(self, host: str) -> client.V1Ingress:
        try:
            ingresses = self.networking_v1.list_ingress_for_all_namespaces()
        except ApiException as e:
            raise RemoteError("ingresses", "", e.status, e.reason or "") from e
        except HTTPError as e:
            raise RemoteError("ingresses", "", None, str(e)) from e
        for ing in ingresses.items or []:
            for rule in (ing.spec.rules if ing.spec else None) or []:
                if rule.host == host:
                    return ing
        raise DomainNotFoundError(host)
