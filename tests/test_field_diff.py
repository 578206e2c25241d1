"""
Tests for the mutable-field diff.
"""
import copy

from music_operator.models.resources import ResourceDescriptor, ResourceKind
from music_operator.services.field_diff import apply_diff, compute_diff, requires_replacement, values_equal


def sts_descriptor(body, externally_managed=None):
    return ResourceDescriptor(
        kind=ResourceKind.STATEFUL_SET,
        name=body["metadata"]["name"],
        namespace="default",
        body=body,
        externally_managed=externally_managed or [],
    )


def live_from(body):
    """Simulate what the API server hands back: defaults and server metadata added."""
    live = copy.deepcopy(body)
    live["metadata"].update({"uid": "abc", "resourceVersion": "7", "generation": 1})
    for container in live["spec"]["template"]["spec"]["containers"]:
        container["imagePullPolicy"] = "IfNotPresent"
        container["terminationMessagePath"] = "/dev/termination-log"
    live["spec"]["podManagementPolicy"] = "OrderedReady"
    live["status"] = {"replicas": 3, "readyReplicas": 3}
    return live


def test_values_equal_is_a_subset_check():
    assert values_equal({"a": 1}, {"a": 1, "b": 2})
    assert not values_equal({"a": 1, "b": 2}, {"a": 1})
    assert not values_equal([{"a": 1}], [{"a": 1}, {"a": 2}])
    assert values_equal({"resources": {"limits": {"memory": "1Gi"}}}, {"resources": {"limits": {"memory": "1024Mi"}}})
    assert not values_equal({"resources": {"limits": {"cpu": "1"}}}, {"resources": {"limits": {"cpu": "2"}}})


def test_server_defaults_do_not_produce_changes(builder, make_service):
    descriptor = next(d for d in builder.build(make_service()) if d.kind == ResourceKind.STATEFUL_SET)

    assert compute_diff(descriptor, live_from(descriptor.body)) == []


def test_image_change_is_detected_and_applied(builder, make_service):
    old = next(d for d in builder.build(make_service()) if d.kind == ResourceKind.STATEFUL_SET)
    new = next(d for d in builder.build(make_service(image="mixcorp/music:2.0")) if d.kind == ResourceKind.STATEFUL_SET)
    live = live_from(old.body)

    changes = compute_diff(new, live)
    assert [change.path for change in changes] == ["spec.template.spec.containers"]

    body = apply_diff(live, changes)
    assert body["spec"]["template"]["spec"]["containers"][0]["image"] == "mixcorp/music:2.0"
    assert body["metadata"]["resourceVersion"] == "7"
    assert "status" not in body
    assert live["spec"]["template"]["spec"]["containers"][0]["image"] == "mixcorp/music:1.4"


def test_externally_managed_replicas_are_ignored(builder, make_service):
    ms = make_service(autoscaling={"minReplicas": 1, "maxReplicas": 10, "targetCPUUtilizationPercentage": 50})
    descriptor = next(d for d in builder.build(ms) if d.kind == ResourceKind.STATEFUL_SET)
    live = live_from(descriptor.body)
    live["spec"]["replicas"] = 7

    assert compute_diff(descriptor, live) == []


def test_unmanaged_replicas_are_restored(builder, make_service):
    descriptor = next(d for d in builder.build(make_service()) if d.kind == ResourceKind.STATEFUL_SET)
    live = live_from(descriptor.body)
    live["spec"]["replicas"] = 1

    changes = compute_diff(descriptor, live)
    assert [(c.path, c.desired, c.live) for c in changes] == [("spec.replicas", 3, 1)]


def test_labels_are_merged_not_replaced(builder, make_service):
    descriptor = next(d for d in builder.build(make_service()) if d.kind == ResourceKind.STATEFUL_SET)
    live = live_from(descriptor.body)
    live["metadata"]["labels"] = {"team": "audio"}

    changes = compute_diff(descriptor, live)
    assert changes[0].path == "metadata.labels"
    assert changes[0].desired["team"] == "audio"
    assert changes[0].desired["app"] == "radio"


def test_volume_claim_templates_are_never_diffed(builder, make_service):
    descriptor = next(d for d in builder.build(make_service()) if d.kind == ResourceKind.STATEFUL_SET)
    live = live_from(descriptor.body)
    live["spec"]["volumeClaimTemplates"][0]["spec"]["resources"]["requests"]["storage"] = "1Gi"

    assert compute_diff(descriptor, live) == []


def test_headless_switch_requires_replacement():
    body = {
        "metadata": {"name": "radio-db-master"},
        "spec": {"type": "ClusterIP", "selector": {"app": "radio"}, "ports": []},
    }
    descriptor = ResourceDescriptor(kind=ResourceKind.SERVICE, name="radio-db-master", namespace="default", body=body)

    assert requires_replacement(descriptor, {"spec": {"clusterIP": "None"}})
    assert not requires_replacement(descriptor, {"spec": {"clusterIP": "10.0.0.12"}})
