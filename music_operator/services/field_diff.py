"""
Field-level diff restricted to the mutable-field set of each kind.

Desired bodies only carry the fields the operator owns, while live objects
come back with server defaults filled in (imagePullPolicy, probe timeouts,
targetPort, ...). Comparison is therefore a subset check: only keys present
in the desired body are compared, lists must match in length and element by
element, and resource quantities are compared by value ("1Gi" == "1024Mi").

Status, uid, resourceVersion, clusterIP and volume claim templates are never
compared or written.
"""
import copy
from typing import Any, Dict, List, NamedTuple, Tuple

from music_operator.models.resources import ResourceDescriptor, ResourceKind
from music_operator.utils import k8s
from music_operator.utils.quantity import resource_lists_equal

# Merged into live metadata, never replaced
METADATA_PATHS: Tuple[str, ...] = (
    "metadata.labels",
    "metadata.annotations",
)

MUTABLE_PATHS: Dict[str, Tuple[str, ...]] = {
    ResourceKind.STATEFUL_SET.value: (
        "spec.replicas",
        "spec.template.metadata.labels",
        "spec.template.spec.initContainers",
        "spec.template.spec.containers",
        "spec.template.spec.volumes",
    ),
    ResourceKind.SERVICE.value: (
        "spec.type",
        "spec.selector",
        "spec.ports",
        "spec.publishNotReadyAddresses",
    ),
    ResourceKind.HORIZONTAL_POD_AUTOSCALER.value: (
        "spec.scaleTargetRef",
        "spec.minReplicas",
        "spec.maxReplicas",
        "spec.metrics",
    ),
}


class FieldChange(NamedTuple):
    path: str
    desired: Any
    live: Any


def values_equal(desired: Any, live: Any) -> bool:
    """
    Whether a live value satisfies a desired value.

    Example:
        >>> values_equal({"image": "a"}, {"image": "a", "imagePullPolicy": "Always"})
        True
        >>> values_equal({"requests": {"memory": "1Gi"}}, {"requests": {"memory": "1024Mi"}})
        True
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return not desired and live is None
        for key, value in desired.items():
            if key == "resources" and isinstance(value, dict):
                if not _resources_equal(value, live.get(key)):
                    return False
                continue
            if not values_equal(value, live.get(key)):
                return False
        return True

    if isinstance(desired, list):
        if not isinstance(live, list):
            return not desired and live is None
        if len(desired) != len(live):
            return False
        return all(values_equal(d, l) for d, l in zip(desired, live))

    return desired == live


def _resources_equal(desired: Dict[str, Any], live: Any) -> bool:
    live = live if isinstance(live, dict) else {}
    for section, values in desired.items():
        if not resource_lists_equal(values, live.get(section)):
            return False
    return True


def compute_diff(descriptor: ResourceDescriptor, live: Dict[str, Any]) -> List[FieldChange]:
    """
    Changes needed to bring a live object to the descriptor's shape.

    Paths listed in descriptor.externally_managed are skipped.

    Args:
        descriptor: Desired shape
        live: Live object as returned by the store

    Returns:
        Changed paths, in a stable order; empty when converged
    """
    changes: List[FieldChange] = []
    desired = descriptor.body

    for path in METADATA_PATHS:
        wanted = k8s.get_path(desired, path)
        if not wanted:
            continue
        current = k8s.get_path(live, path) or {}
        if not values_equal(wanted, current):
            changes.append(FieldChange(path, {**current, **wanted}, current))

    for path in MUTABLE_PATHS.get(descriptor.kind.value, ()):
        if path in descriptor.externally_managed:
            continue
        if not k8s.has_path(desired, path):
            continue
        wanted = k8s.get_path(desired, path)
        current = k8s.get_path(live, path)
        if not values_equal(wanted, current):
            changes.append(FieldChange(path, copy.deepcopy(wanted), current))
    return changes


def apply_diff(live: Dict[str, Any], changes: List[FieldChange]) -> Dict[str, Any]:
    """
    Write changed paths onto a copy of the live object.

    Everything else, including metadata.resourceVersion, is carried over so
    the update is rejected when the object moved underneath us.
    """
    body = copy.deepcopy(live)
    body.pop("status", None)
    for change in changes:
        k8s.set_path(body, change.path, copy.deepcopy(change.desired))
    return body


def requires_replacement(descriptor: ResourceDescriptor, live: Dict[str, Any]) -> bool:
    """
    Whether the live object differs in an immutable field the operator owns.

    Only a Service switching between headless and load-balanced qualifies:
    clusterIP cannot be changed in place.
    """
    if descriptor.kind != ResourceKind.SERVICE:
        return False
    wanted_headless = k8s.get_path(descriptor.body, "spec.clusterIP") == "None"
    live_headless = k8s.get_path(live, "spec.clusterIP") == "None"
    return wanted_headless != live_headless
