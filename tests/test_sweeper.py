from datetime import datetime

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError

from controller.sweeper import sweep_once
from shared.annotations import ANNOTATION_KEY_PREFIX, MGMT_ANNOTATION
from tests.factories import make_service

NOW = datetime(2026, 10, 17, 12, 0, 0)
PAST = "2026-10-17 11:59:59"
FUTURE = "2026-10-18 12:00:00"


def _key(iprange):
    return f"{ANNOTATION_KEY_PREFIX}.{iprange}"


def _listing(core_v1, *services):
    core_v1.list_service_for_all_namespaces.return_value = client.V1ServiceList(items=list(services))


def _stored_bodies(core_v1):
    return [c.kwargs["body"] for c in core_v1.replace_namespaced_service.call_args_list]


def test_removes_only_expired_rule(gateway, core_v1):
    svc = make_service(
        ranges=["10.0.0.1/32", "10.0.0.2/32", "10.0.0.3/32"],
        annotations={_key("10.0.0.1/32"): PAST, _key("10.0.0.2/32"): FUTURE},
    )
    _listing(core_v1, svc)

    stats = sweep_once(gateway, now=NOW)

    assert stats.revoked == 1 and stats.failed == 0 and stats.scanned == 1
    (stored,) = _stored_bodies(core_v1)
    assert stored.spec.load_balancer_source_ranges == ["10.0.0.2/32", "10.0.0.3/32"]
    assert stored.metadata.annotations == {MGMT_ANNOTATION: "true", _key("10.0.0.2/32"): FUTURE}


def test_nothing_expired_means_no_update(gateway, core_v1):
    _listing(core_v1, make_service(ranges=["10.0.0.1/32"], annotations={_key("10.0.0.1/32"): FUTURE}))
    assert sweep_once(gateway, now=NOW).revoked == 0
    core_v1.replace_namespaced_service.assert_not_called()


def test_unmanaged_services_are_ignored(gateway, core_v1):
    _listing(core_v1, make_service(managed=False, ranges=["10.0.0.1/32"],
                                   annotations={_key("10.0.0.1/32"): PAST}))
    stats = sweep_once(gateway, now=NOW)
    assert stats.scanned == 0
    core_v1.replace_namespaced_service.assert_not_called()


def test_permanent_ranges_are_kept(gateway, core_v1):
    _listing(core_v1, make_service(ranges=["0.0.0.0/0", "10.0.0.1/32"],
                                   annotations={_key("10.0.0.1/32"): PAST}))
    sweep_once(gateway, now=NOW)
    (stored,) = _stored_bodies(core_v1)
    assert stored.spec.load_balancer_source_ranges == ["0.0.0.0/0"]


def test_two_expired_rules_build_on_each_other(gateway, core_v1):
    _listing(core_v1, make_service(
        ranges=["10.0.0.1/32", "10.0.0.2/32"],
        annotations={_key("10.0.0.1/32"): PAST, _key("10.0.0.2/32"): PAST},
    ))
    stats = sweep_once(gateway, now=NOW)
    assert stats.revoked == 2
    first, second = _stored_bodies(core_v1)
    assert len(first.spec.load_balancer_source_ranges) == 1
    assert second.spec.load_balancer_source_ranges == []
    assert second.metadata.annotations == {MGMT_ANNOTATION: "true"}
    # the second update starts from what the first one stored
    assert second.metadata.resource_version == "3"


def test_listing_failure_skips_tick(gateway, core_v1):
    core_v1.list_service_for_all_namespaces.side_effect = ApiException(status=500, reason="boom")
    stats = sweep_once(gateway, now=NOW)
    assert stats.skipped
    core_v1.replace_namespaced_service.assert_not_called()


def test_failure_on_one_service_does_not_stop_the_rest(gateway, core_v1):
    broken = make_service(name="broken", ranges=["10.0.0.1/32"], annotations={_key("10.0.0.1/32"): PAST})
    healthy = make_service(name="healthy", ranges=["10.0.0.1/32"], annotations={_key("10.0.0.1/32"): PAST})
    _listing(core_v1, broken, healthy)

    def _replace(name, namespace, body):
        if name == "broken":
            raise ApiException(status=409, reason="Conflict")
        return body

    core_v1.replace_namespaced_service.side_effect = _replace
    stats = sweep_once(gateway, now=NOW)
    assert stats.failed == 1
    assert stats.revoked == 1
    assert core_v1.replace_namespaced_service.call_count == 2


def test_orphaned_annotation_is_erased(gateway, core_v1):
    _listing(core_v1, make_service(ranges=["192.168.0.0/24"], annotations={_key("10.0.0.1/32"): PAST}))
    stats = sweep_once(gateway, now=NOW)
    (stored,) = _stored_bodies(core_v1)
    assert stored.spec.load_balancer_source_ranges == ["192.168.0.0/24"]
    assert _key("10.0.0.1/32") not in stored.metadata.annotations
    assert stats.orphaned == 1
    assert stats.revoked == 0


def test_failed_rule_does_not_stop_the_next_rule_on_same_service(gateway, core_v1):
    _listing(core_v1, make_service(
        ranges=["10.0.0.1/32", "10.0.0.2/32"],
        annotations={_key("10.0.0.1/32"): PAST, _key("10.0.0.2/32"): PAST},
    ))
    calls = []

    def _replace(name, namespace, body):
        calls.append(list(body.spec.load_balancer_source_ranges))
        if len(calls) == 1:
            raise MaxRetryError(None, "/api/v1", "connection refused")
        return body

    core_v1.replace_namespaced_service.side_effect = _replace
    stats = sweep_once(gateway, now=NOW)

    assert len(calls) == 2
    assert stats.failed == 1
    assert stats.revoked == 1
    # second attempt starts from the listed object, the failed removal was discarded
    assert calls[1] == ["10.0.0.1/32"]


def test_unexpected_error_on_one_rule_is_contained(gateway, core_v1):
    _listing(core_v1, make_service(
        ranges=["10.0.0.1/32", "10.0.0.2/32"],
        annotations={_key("10.0.0.1/32"): PAST, _key("10.0.0.2/32"): PAST},
    ))
    core_v1.replace_namespaced_service.side_effect = [RuntimeError("boom"), make_service(resource_version="9")]
    stats = sweep_once(gateway, now=NOW)
    assert core_v1.replace_namespaced_service.call_count == 2
    assert stats.failed == 1
