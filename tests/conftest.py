from datetime import datetime
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from shared.k8s import ResourceGateway
from tests.factories import make_ingress


@pytest.fixture
def core_v1():
    api = MagicMock()
    # API server echoes the stored object with a bumped resourceVersion
    def _replace(name, namespace, body):
        body.metadata.resource_version = str(int(body.metadata.resource_version or "0") + 1)
        return body
    api.replace_namespaced_service.side_effect = _replace
    return api


@pytest.fixture
def networking_v1():
    api = MagicMock()
    api.list_ingress_for_all_namespaces.return_value = client.V1IngressList(items=[make_ingress()])
    return api


@pytest.fixture
def gateway(core_v1, networking_v1):
    return ResourceGateway(core_v1, networking_v1)


@pytest.fixture
def fixed_now(monkeypatch):
    now = datetime(2026, 10, 17, 9, 30, 15)
    monkeypatch.setattr("shared.annotations._now", lambda: now)
    return now
