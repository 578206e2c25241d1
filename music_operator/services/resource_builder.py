"""
Desired State Builder.

Pure mapping from a MusicService to the ordered list of child resource
descriptors. Identical spec and generation always produce equal descriptors
in the same order:

1. application Service, StatefulSet, optional HorizontalPodAutoscaler
2. database Services, workloads and autoscaler for the selected topology

Any workload targeted by an autoscaler descriptor gets spec.replicas listed
as externally managed and carries the replicas-managed-by annotation.
"""
from typing import Any, Dict, List, Optional

from music_operator.models.music_service import MusicService
from music_operator.models.resources import ResourceDescriptor, ResourceKind, Tier
from music_operator.services.database_engine import DatabaseEngine
from music_operator.services.topology import TopologySelector
from music_operator.utils import k8s


APP_COMPONENT = "music-service"
APP_CONTAINER = "music-service"
APP_DATA_TEMPLATE = "music-data"
APP_DATA_PATH = "/data"
APP_CONTAINER_PORT = 80

REPLICAS_PATH = "spec.replicas"


def app_autoscaler_name(ms: MusicService) -> str:
    return f"{ms.name}-autoscaler"


class ResourceBuilder:
    """
    Builds child resource descriptors for a MusicService.

    Args:
        engine: Database engine strategy used for the database tier
    """

    def __init__(self, engine: DatabaseEngine):
        self.engine = engine
        self.topology = TopologySelector(engine)

    def build(self, ms: MusicService) -> List[ResourceDescriptor]:
        """
        Build every descriptor the spec asks for.

        Args:
            ms: Parent resource (treated as immutable)

        Returns:
            Descriptors in dependency order

        Raises:
            ValidationError: If a quantity string is malformed, or the engine
                cannot run the requested topology
        """
        descriptors = [
            self._descriptor(ms, ResourceKind.SERVICE, self.build_app_service(ms), "ServiceFailed"),
            self._descriptor(
                ms, ResourceKind.STATEFUL_SET, self.build_app_statefulset(ms), "StatefulSetFailed",
                storage_policy=ms.spec.storage.update_policy.value,
            ),
        ]
        if ms.spec.autoscaling is not None:
            descriptors.append(
                self._descriptor(
                    ms, ResourceKind.HORIZONTAL_POD_AUTOSCALER, self.build_app_autoscaler(ms), "AutoscalerFailed",
                )
            )

        descriptors.extend(self.topology.build(ms))
        mark_externally_managed(descriptors)
        return descriptors

    def build_app_service(self, ms: MusicService) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": k8s.object_meta(ms, ms.name, "app"),
            "spec": {
                "type": "ClusterIP",
                "selector": k8s.selector_labels(ms, APP_COMPONENT),
                "ports": [k8s.service_port("http", ms.spec.port, APP_CONTAINER_PORT)],
            },
        }

    def build_app_statefulset(self, ms: MusicService) -> Dict[str, Any]:
        selector = k8s.selector_labels(ms, APP_COMPONENT)
        container = {
            "name": APP_CONTAINER,
            "image": ms.spec.image,
            "ports": [k8s.container_port("http", APP_CONTAINER_PORT)],
            "env": [
                k8s.env_value("STREAMING_BITRATE", ms.spec.streaming.bitrate),
                k8s.env_value("MAX_CONNECTIONS", str(ms.spec.streaming.max_connections)),
            ],
            "resources": k8s.resource_requirements(ms.spec.resources),
            "readinessProbe": k8s.http_probe("/", "http", 5, 10),
            "livenessProbe": k8s.http_probe("/", "http", 15, 20),
            "volumeMounts": [k8s.volume_mount(APP_DATA_TEMPLATE, APP_DATA_PATH)],
        }
        return {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": k8s.object_meta(ms, ms.name, "app"),
            "spec": {
                "replicas": k8s.clamp_replicas(ms.spec.replicas, ms.spec.autoscaling),
                "serviceName": ms.name,
                "selector": {"matchLabels": selector},
                "template": {
                    "metadata": {"labels": dict(selector)},
                    "spec": {"containers": [container]},
                },
                "volumeClaimTemplates": [
                    k8s.volume_claim_template(APP_DATA_TEMPLATE, ms.spec.storage.size),
                ],
            },
        }

    def build_app_autoscaler(self, ms: MusicService) -> Dict[str, Any]:
        return {
            "apiVersion": "autoscaling/v2",
            "kind": "HorizontalPodAutoscaler",
            "metadata": k8s.object_meta(ms, app_autoscaler_name(ms), "autoscaler"),
            "spec": k8s.autoscaler_spec(ms.name, ms.spec.autoscaling),
        }

    def _descriptor(
        self,
        ms: MusicService,
        kind: ResourceKind,
        body: Dict[str, Any],
        failure_reason: str,
        storage_policy: Optional[str] = None,
    ) -> ResourceDescriptor:
        return ResourceDescriptor(
            kind=kind,
            name=body["metadata"]["name"],
            namespace=ms.namespace,
            body=body,
            tier=Tier.APP,
            failure_reason=failure_reason,
            storage_policy=storage_policy,
        )


def mark_externally_managed(descriptors: List[ResourceDescriptor]) -> None:
    """
    Hand spec.replicas of autoscaled workloads to the autoscaler.

    The replica count is still written on create; afterwards the reconciler
    neither compares nor overwrites it.
    """
    targets = {
        d.body["spec"]["scaleTargetRef"]["name"]
        for d in descriptors
        if d.kind == ResourceKind.HORIZONTAL_POD_AUTOSCALER
    }
    for descriptor in descriptors:
        if descriptor.kind != ResourceKind.STATEFUL_SET or descriptor.name not in targets:
            continue
        if REPLICAS_PATH not in descriptor.externally_managed:
            descriptor.externally_managed.append(REPLICAS_PATH)
        annotations = descriptor.body["metadata"].setdefault("annotations", {})
        annotations[k8s.REPLICAS_MANAGED_BY_ANNOTATION] = "autoscaler"
