"""
Helpers for building k8s-shaped dicts.

Everything here is pure: the same inputs always produce equal dicts, which
keeps the desired-state builder deterministic.
"""
from typing import Any, Dict, List, Optional

from music_operator.models.music_service import AutoscalingSpec, MusicService, ResourceRequirements
from music_operator.utils.quantity import validate_quantity

MANAGED_BY = "music-operator"
APP_NAME = "music-service"

INSTANCE_LABEL = "app.kubernetes.io/instance"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
REPLICAS_MANAGED_BY_ANNOTATION = "music.mixcorp.org/replicas-managed-by"


def selector_labels(ms: MusicService, component: str) -> Dict[str, str]:
    """Pod selector labels; also the pod template labels."""
    return {
        "app": ms.name,
        "component": component,
    }


def standard_labels(ms: MusicService, component: str) -> Dict[str, str]:
    return {
        "app": ms.name,
        "component": component,
        "app.kubernetes.io/name": APP_NAME,
        INSTANCE_LABEL: ms.name,
        MANAGED_BY_LABEL: MANAGED_BY,
    }


def owned_by_labels(ms: MusicService) -> Dict[str, str]:
    """Label selector matching every child of a parent."""
    return {
        INSTANCE_LABEL: ms.name,
        MANAGED_BY_LABEL: MANAGED_BY,
    }


def object_meta(
    ms: MusicService,
    name: str,
    component: str,
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "name": name,
        "namespace": ms.namespace,
        "labels": standard_labels(ms, component),
        "ownerReferences": [ms.owner_reference()],
    }
    if annotations:
        metadata["annotations"] = dict(annotations)
    return metadata


def is_owned_by(obj: Dict[str, Any], uid: Optional[str]) -> bool:
    if not uid:
        return False
    for ref in (obj.get("metadata") or {}).get("ownerReferences") or []:
        if ref.get("uid") == uid and ref.get("controller"):
            return True
    return False


def env_value(name: str, value: str) -> Dict[str, Any]:
    return {"name": name, "value": value}


def env_from_secret(name: str, secret_name: str, key: str) -> Dict[str, Any]:
    return {
        "name": name,
        "valueFrom": {"secretKeyRef": {"name": secret_name, "key": key}},
    }


def env_from_field(name: str, field_path: str) -> Dict[str, Any]:
    return {
        "name": name,
        "valueFrom": {"fieldRef": {"apiVersion": "v1", "fieldPath": field_path}},
    }


def container_port(name: str, port: int) -> Dict[str, Any]:
    return {"name": name, "containerPort": port, "protocol": "TCP"}


def service_port(name: str, port: int, target_port: Any = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"name": name, "port": port, "protocol": "TCP"}
    if target_port is not None:
        body["targetPort"] = target_port
    return body


def exec_probe(command: str, initial_delay: int, period: int) -> Dict[str, Any]:
    return {
        "exec": {"command": ["/bin/sh", "-c", command]},
        "initialDelaySeconds": initial_delay,
        "periodSeconds": period,
    }


def http_probe(path: str, port: Any, initial_delay: int, period: int) -> Dict[str, Any]:
    return {
        "httpGet": {"path": path, "port": port, "scheme": "HTTP"},
        "initialDelaySeconds": initial_delay,
        "periodSeconds": period,
    }


def empty_dir_volume(name: str) -> Dict[str, Any]:
    return {"name": name, "emptyDir": {}}


def volume_mount(name: str, path: str) -> Dict[str, Any]:
    return {"name": name, "mountPath": path}


def volume_claim_template(name: str, size: str) -> Dict[str, Any]:
    """
    Single-claim template requesting `size`.

    Raises:
        ValidationError: If size is not a valid quantity
    """
    return {
        "metadata": {"name": name},
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": validate_quantity(size)}},
        },
    }


def claim_template_size(sts: Dict[str, Any]) -> Optional[str]:
    """Storage request of the first volume claim template, if any."""
    templates = (sts.get("spec") or {}).get("volumeClaimTemplates") or []
    if not templates:
        return None
    requests = ((templates[0].get("spec") or {}).get("resources") or {}).get("requests") or {}
    return requests.get("storage")


def claim_template_name(sts: Dict[str, Any]) -> Optional[str]:
    templates = (sts.get("spec") or {}).get("volumeClaimTemplates") or []
    if not templates:
        return None
    return (templates[0].get("metadata") or {}).get("name")


def claim_prefix(template: str, workload: str) -> str:
    """Claims of a StatefulSet are named <template>-<workload>-<ordinal>."""
    return f"{template}-{workload}-"


def resource_requirements(resources: Optional[ResourceRequirements]) -> Dict[str, Any]:
    """
    Normalize requests/limits to string quantities.

    Raises:
        ValidationError: If any value is not a valid quantity
    """
    if resources is None:
        return {}
    body: Dict[str, Any] = {}
    for section in ("requests", "limits"):
        values = getattr(resources, section)
        if values:
            body[section] = {
                name: validate_quantity(str(value)) for name, value in sorted(values.items())
            }
    return body


def resource_metric(resource_name: str, target_utilization: int) -> Dict[str, Any]:
    return {
        "type": "Resource",
        "resource": {
            "name": resource_name,
            "target": {"type": "Utilization", "averageUtilization": target_utilization},
        },
    }


def autoscaler_spec(target_name: str, autoscaling: AutoscalingSpec) -> Dict[str, Any]:
    metrics: List[Dict[str, Any]] = [
        resource_metric("cpu", autoscaling.target_cpu_utilization_percentage),
    ]
    if autoscaling.target_memory_utilization_percentage is not None:
        metrics.append(resource_metric("memory", autoscaling.target_memory_utilization_percentage))
    return {
        "scaleTargetRef": {"apiVersion": "apps/v1", "kind": "StatefulSet", "name": target_name},
        "minReplicas": autoscaling.min_replicas,
        "maxReplicas": autoscaling.max_replicas,
        "metrics": metrics,
    }


def clamp_replicas(replicas: int, autoscaling: Optional[AutoscalingSpec]) -> int:
    """Initial replica count for a workload an autoscaler will take over."""
    if autoscaling is None:
        return replicas
    return max(autoscaling.min_replicas, min(replicas, autoscaling.max_replicas))


def get_path(obj: Dict[str, Any], path: str) -> Any:
    """Read a dotted path ("spec.template.spec.containers"); None when absent."""
    current: Any = obj
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def set_path(obj: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = obj
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def has_path(obj: Dict[str, Any], path: str) -> bool:
    current: Any = obj
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return False
        current = current[part]
    return True
