"""
Database Topology Selector.

Chooses between two mutually exclusive database shapes and builds their
descriptors:

- Primary/Replica: one primary (always exactly one node) behind a headless
  Service, N asynchronous read-only replicas behind a load-balanced read
  Service, and an optional replica autoscaler.
- High availability: one Galera pool of N+1 symmetric nodes, a headless
  discovery Service that publishes not-ready addresses, and a readiness
  filtered Service for writes.

Enabling HA suppresses every primary/replica descriptor, and vice versa.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from music_operator.models.music_service import DatabaseSpec, MusicService, StorageSpec
from music_operator.models.resources import ResourceDescriptor, ResourceKind, Tier
from music_operator.services.credential_manager import (
    PASSWORD_KEY,
    USERNAME_KEY,
    replication_needed,
    replication_secret_name,
    root_secret_name,
)
from music_operator.services.database_engine import CONFIG_DIR, DATA_DIR, INIT_CONFIG_DIR, DatabaseEngine
from music_operator.utils import k8s

DB_DATA_TEMPLATE = "db-data"
DB_CONFIG_VOLUME = "db-config"

GALERA_PORTS = (
    ("galera-repl", 4567),
    ("galera-ist", 4568),
    ("galera-sst", 4444),
)


class Topology(str, Enum):
    NONE = "none"
    PRIMARY_REPLICA = "primary-replica"
    HIGH_AVAILABILITY = "high-availability"


def db_master_name(ms: MusicService) -> str:
    return f"{ms.name}-db-master"


def db_replica_name(ms: MusicService) -> str:
    return f"{ms.name}-db-replica"


def db_read_name(ms: MusicService) -> str:
    return f"{ms.name}-db-read"


def db_galera_name(ms: MusicService) -> str:
    return f"{ms.name}-db-galera"


def db_replica_autoscaler_name(ms: MusicService) -> str:
    return f"{ms.name}-db-replica-autoscaler"


class TopologySelector:
    """
    Builds database descriptors for the topology a spec asks for.

    Args:
        engine: Database engine strategy supplying images and scripts
    """

    def __init__(self, engine: DatabaseEngine):
        self.engine = engine

    def select(self, ms: MusicService) -> Topology:
        if not ms.database_enabled:
            return Topology.NONE
        if ms.database_ha_enabled:
            return Topology.HIGH_AVAILABILITY
        return Topology.PRIMARY_REPLICA

    def build(self, ms: MusicService) -> List[ResourceDescriptor]:
        """
        Descriptors for the selected topology: Services, then workloads,
        then autoscalers.

        Raises:
            ValidationError: If a quantity is malformed or the engine cannot
                run the selected topology
        """
        topology = self.select(ms)
        if topology == Topology.PRIMARY_REPLICA:
            return self._primary_replica(ms)
        if topology == Topology.HIGH_AVAILABILITY:
            return self._high_availability(ms)
        return []

    # ------------------------------------------------------------------
    # Primary / replica
    # ------------------------------------------------------------------

    def _primary_replica(self, ms: MusicService) -> List[ResourceDescriptor]:
        db = ms.spec.database
        storage = self._storage(db)
        descriptors = [
            self._descriptor(
                ms, ResourceKind.SERVICE, self._master_service(ms), Tier.DATABASE, "DBServicesFailed"
            ),
        ]
        if db.replicas > 0:
            descriptors.append(
                self._descriptor(
                    ms, ResourceKind.SERVICE, self._read_service(ms), Tier.DATABASE, "DBServicesFailed"
                )
            )

        descriptors.append(
            self._descriptor(
                ms, ResourceKind.STATEFUL_SET, self._primary_statefulset(ms, db, storage),
                Tier.DATABASE, "DBMasterFailed", storage,
            )
        )
        if db.replicas > 0:
            descriptors.append(
                self._descriptor(
                    ms, ResourceKind.STATEFUL_SET, self._replica_statefulset(ms, db, storage),
                    Tier.DATABASE_REPLICA, "DBReplicasFailed", storage,
                )
            )
            if db.autoscaling is not None:
                descriptors.append(
                    self._descriptor(
                        ms, ResourceKind.HORIZONTAL_POD_AUTOSCALER, self._replica_autoscaler(ms, db),
                        Tier.DATABASE_REPLICA, "DBAutoscalerFailed",
                    )
                )
        return descriptors

    def _master_service(self, ms: MusicService) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": k8s.object_meta(ms, db_master_name(ms), "db-master"),
            "spec": {
                "type": "ClusterIP",
                "clusterIP": "None",
                "selector": k8s.selector_labels(ms, "db-master"),
                "ports": [k8s.service_port("mysql", self.engine.default_port)],
            },
        }

    def _read_service(self, ms: MusicService) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": k8s.object_meta(ms, db_read_name(ms), "db-read"),
            "spec": {
                "type": "ClusterIP",
                "selector": k8s.selector_labels(ms, "db-replica"),
                "ports": [k8s.service_port("mysql", self.engine.default_port)],
            },
        }

    def _primary_statefulset(self, ms: MusicService, db: DatabaseSpec, storage: StorageSpec) -> Dict[str, Any]:
        name = db_master_name(ms)
        image = db.image or self.engine.default_image
        init = {
            "name": "init-db-config",
            "image": image,
            "command": ["/bin/sh", "-c", self.engine.primary_config_script(db.gtid_enabled)],
            "volumeMounts": [k8s.volume_mount(DB_CONFIG_VOLUME, INIT_CONFIG_DIR)],
        }
        container = self._server_container(ms, image, self._base_env(ms))
        return self._statefulset(
            ms, name, "db-master", 1, [init], [container], storage,
        )

    def _replica_statefulset(self, ms: MusicService, db: DatabaseSpec, storage: StorageSpec) -> Dict[str, Any]:
        name = db_replica_name(ms)
        image = db.image or self.engine.default_image
        replication = replication_needed(ms)

        init = {
            "name": "init-db-config",
            "image": image,
            "command": ["/bin/sh", "-c", self.engine.replica_config_script(db.gtid_enabled)],
            "env": [k8s.env_from_field("POD_NAME", "metadata.name")],
            "volumeMounts": [k8s.volume_mount(DB_CONFIG_VOLUME, INIT_CONFIG_DIR)],
        }
        env = self._base_env(ms)
        if replication:
            env += self._replication_env(ms)
        containers = [self._server_container(ms, image, env)]
        if replication:
            containers.append({
                "name": "replication-setup",
                "image": image,
                "command": [
                    "/bin/sh", "-c",
                    self.engine.replica_setup_script(db_master_name(ms), db.gtid_enabled),
                ],
                "env": [
                    k8s.env_from_secret(self.engine.root_password_env, root_secret_name(ms), PASSWORD_KEY),
                ] + self._replication_env(ms),
            })
        replicas = k8s.clamp_replicas(db.replicas, db.autoscaling)
        return self._statefulset(ms, name, "db-replica", replicas, [init], containers, storage)

    def _replica_autoscaler(self, ms: MusicService, db: DatabaseSpec) -> Dict[str, Any]:
        return {
            "apiVersion": "autoscaling/v2",
            "kind": "HorizontalPodAutoscaler",
            "metadata": k8s.object_meta(ms, db_replica_autoscaler_name(ms), "db-autoscaler"),
            "spec": k8s.autoscaler_spec(db_replica_name(ms), db.autoscaling),
        }

    # ------------------------------------------------------------------
    # High availability (Galera)
    # ------------------------------------------------------------------

    def _high_availability(self, ms: MusicService) -> List[ResourceDescriptor]:
        db = ms.spec.database
        storage = self._storage(db)
        # Raises ValidationError for engines without multi-primary support
        galera = self._galera_statefulset(ms, db, storage)
        return [
            self._descriptor(
                ms, ResourceKind.SERVICE, self._galera_discovery_service(ms), Tier.DATABASE,
                "DBGaleraServicesFailed",
            ),
            self._descriptor(
                ms, ResourceKind.SERVICE, self._galera_write_service(ms), Tier.DATABASE,
                "DBGaleraServicesFailed",
            ),
            self._descriptor(
                ms, ResourceKind.STATEFUL_SET, galera, Tier.DATABASE, "DBGaleraFailed", storage,
            ),
        ]

    def _galera_ports(self) -> List[Dict[str, Any]]:
        return [k8s.service_port("mysql", self.engine.default_port)] + [
            k8s.service_port(port_name, port) for port_name, port in GALERA_PORTS
        ]

    def _galera_discovery_service(self, ms: MusicService) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": k8s.object_meta(ms, db_galera_name(ms), "db-galera"),
            "spec": {
                "type": "ClusterIP",
                "clusterIP": "None",
                # Nodes must find each other before any of them is ready
                "publishNotReadyAddresses": True,
                "selector": k8s.selector_labels(ms, "db-galera"),
                "ports": self._galera_ports(),
            },
        }

    def _galera_write_service(self, ms: MusicService) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": k8s.object_meta(ms, db_master_name(ms), "db-master"),
            "spec": {
                "type": "ClusterIP",
                "publishNotReadyAddresses": False,
                "selector": k8s.selector_labels(ms, "db-galera"),
                "ports": [k8s.service_port("mysql", self.engine.default_port)],
            },
        }

    def _galera_statefulset(self, ms: MusicService, db: DatabaseSpec, storage: StorageSpec) -> Dict[str, Any]:
        name = db_galera_name(ms)
        image = db.image or self.engine.default_image
        nodes = db.replicas + 1
        sst_auth = replication_needed(ms)
        peers = [
            f"{name}-{ordinal}.{name}.{ms.namespace}.svc.cluster.local" for ordinal in range(nodes)
        ]
        config_script = self.engine.galera_config_script(f"{ms.name}-galera", peers, sst_auth)

        init_env = [
            k8s.env_from_field("POD_NAME", "metadata.name"),
            k8s.env_from_field("POD_IP", "status.podIP"),
        ]
        if sst_auth:
            init_env += self._replication_env(ms)
        init = {
            "name": "init-galera-config",
            "image": image,
            "command": ["/bin/bash", "-c", config_script],
            "env": init_env,
            "volumeMounts": [
                k8s.volume_mount(DB_CONFIG_VOLUME, INIT_CONFIG_DIR),
                k8s.volume_mount(DB_DATA_TEMPLATE, DATA_DIR),
            ],
        }

        container = self._server_container(ms, image, self._base_env(ms))
        container["ports"] += [k8s.container_port(port_name, port) for port_name, port in GALERA_PORTS]
        container["readinessProbe"] = k8s.exec_probe(
            "mysql -uroot -p${MYSQL_ROOT_PASSWORD} -N -e \"SHOW STATUS LIKE 'wsrep_ready'\" | grep -q ON",
            10,
            10,
        )
        containers = [container]
        if sst_auth:
            containers.append({
                "name": "galera-sst-user",
                "image": image,
                "command": ["/bin/sh", "-c", self.engine.galera_sst_user_script()],
                "env": [
                    k8s.env_from_secret(self.engine.root_password_env, root_secret_name(ms), PASSWORD_KEY),
                ] + self._replication_env(ms),
            })
        return self._statefulset(ms, name, "db-galera", nodes, [init], containers, storage)

    # ------------------------------------------------------------------
    # Shared pieces
    # ------------------------------------------------------------------

    def _storage(self, db: DatabaseSpec) -> StorageSpec:
        return db.storage or StorageSpec(size=self.engine.default_storage_size)

    def _base_env(self, ms: MusicService) -> List[Dict[str, Any]]:
        return [
            k8s.env_from_secret(self.engine.root_password_env, root_secret_name(ms), PASSWORD_KEY),
            k8s.env_value(self.engine.database_env, self.engine.default_database),
        ]

    def _replication_env(self, ms: MusicService) -> List[Dict[str, Any]]:
        secret = replication_secret_name(ms)
        return [
            k8s.env_from_secret("REPLICATION_USER", secret, USERNAME_KEY),
            k8s.env_from_secret("REPLICATION_PASSWORD", secret, PASSWORD_KEY),
        ]

    def _server_container(self, ms: MusicService, image: str, env: List[Dict[str, Any]]) -> Dict[str, Any]:
        ping = self.engine.ping_command()
        return {
            "name": self.engine.container_name,
            "image": image,
            "env": env,
            "ports": [k8s.container_port("mysql", self.engine.default_port)],
            "readinessProbe": k8s.exec_probe(ping, 10, 10),
            "livenessProbe": k8s.exec_probe(ping, 30, 20),
            "volumeMounts": [
                k8s.volume_mount(DB_DATA_TEMPLATE, DATA_DIR),
                k8s.volume_mount(DB_CONFIG_VOLUME, CONFIG_DIR),
            ],
        }

    def _statefulset(
        self,
        ms: MusicService,
        name: str,
        component: str,
        replicas: int,
        init_containers: List[Dict[str, Any]],
        containers: List[Dict[str, Any]],
        storage: StorageSpec,
    ) -> Dict[str, Any]:
        selector = k8s.selector_labels(ms, component)
        return {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": k8s.object_meta(ms, name, component),
            "spec": {
                "replicas": replicas,
                "serviceName": name,
                "selector": {"matchLabels": selector},
                "template": {
                    "metadata": {"labels": dict(selector)},
                    "spec": {
                        "initContainers": init_containers,
                        "containers": containers,
                        "volumes": [k8s.empty_dir_volume(DB_CONFIG_VOLUME)],
                    },
                },
                "volumeClaimTemplates": [k8s.volume_claim_template(DB_DATA_TEMPLATE, storage.size)],
            },
        }

    def _descriptor(
        self,
        ms: MusicService,
        kind: ResourceKind,
        body: Dict[str, Any],
        tier: Tier,
        failure_reason: str,
        storage: Optional[StorageSpec] = None,
    ) -> ResourceDescriptor:
        return ResourceDescriptor(
            kind=kind,
            name=body["metadata"]["name"],
            namespace=ms.namespace,
            body=body,
            tier=tier,
            failure_reason=failure_reason,
            storage_policy=storage.update_policy.value if storage is not None else None,
        )
