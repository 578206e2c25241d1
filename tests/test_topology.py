"""
Tests for the database topology selector.
"""
import pytest

from music_operator.exceptions import ValidationError
from music_operator.models.resources import ResourceKind, Tier
from music_operator.services.database_engine import MySQLEngine, get_engine
from music_operator.services.topology import Topology, TopologySelector


def names(descriptors):
    return [(d.kind, d.name) for d in descriptors]


def test_no_database_builds_nothing(engine, make_service):
    selector = TopologySelector(engine)
    ms = make_service(database={"enabled": False, "replicas": 2})

    assert selector.select(ms) == Topology.NONE
    assert selector.build(ms) == []


def test_primary_without_replicas(engine, make_service):
    ms = make_service(database={"enabled": True})
    descriptors = TopologySelector(engine).build(ms)

    assert names(descriptors) == [
        (ResourceKind.SERVICE, "radio-db-master"),
        (ResourceKind.STATEFUL_SET, "radio-db-master"),
    ]
    primary = descriptors[1].body
    assert primary["spec"]["replicas"] == 1
    assert descriptors[0].body["spec"]["clusterIP"] == "None"
    assert descriptors[1].storage_policy == "Resize"


def test_primary_replica_with_autoscaler(engine, make_service):
    ms = make_service(
        database={
            "enabled": True,
            "replicas": 2,
            "storage": {"size": "20Gi"},
            "autoscaling": {"minReplicas": 1, "maxReplicas": 4, "targetCPUUtilizationPercentage": 60},
        },
    )
    descriptors = TopologySelector(engine).build(ms)

    assert names(descriptors) == [
        (ResourceKind.SERVICE, "radio-db-master"),
        (ResourceKind.SERVICE, "radio-db-read"),
        (ResourceKind.STATEFUL_SET, "radio-db-master"),
        (ResourceKind.STATEFUL_SET, "radio-db-replica"),
        (ResourceKind.HORIZONTAL_POD_AUTOSCALER, "radio-db-replica-autoscaler"),
    ]
    replica = descriptors[3]
    assert replica.tier == Tier.DATABASE_REPLICA
    assert replica.body["spec"]["replicas"] == 2
    containers = [c["name"] for c in replica.body["spec"]["template"]["spec"]["containers"]]
    assert containers == ["mariadb", "replication-setup"]
    assert replica.body["spec"]["volumeClaimTemplates"][0]["spec"]["resources"]["requests"]["storage"] == "20Gi"


def test_replication_disabled_drops_sidecar(engine, make_service):
    ms = make_service(database={"enabled": True, "replicas": 1, "replication": {"enabled": False}})
    replica = TopologySelector(engine).build(ms)[-1]

    containers = [c["name"] for c in replica.body["spec"]["template"]["spec"]["containers"]]
    assert containers == ["mariadb"]


def test_high_availability_excludes_primary_replica(engine, make_service):
    ms = make_service(
        database={
            "enabled": True,
            "replicas": 2,
            "highAvailability": {"enabled": True},
            "autoscaling": {"minReplicas": 1, "maxReplicas": 4, "targetCPUUtilizationPercentage": 60},
        },
    )
    selector = TopologySelector(engine)
    descriptors = selector.build(ms)

    assert selector.select(ms) == Topology.HIGH_AVAILABILITY
    assert names(descriptors) == [
        (ResourceKind.SERVICE, "radio-db-galera"),
        (ResourceKind.SERVICE, "radio-db-master"),
        (ResourceKind.STATEFUL_SET, "radio-db-galera"),
    ]
    discovery, write, galera = (d.body for d in descriptors)
    assert discovery["spec"]["publishNotReadyAddresses"] is True
    assert discovery["spec"]["clusterIP"] == "None"
    assert "clusterIP" not in write["spec"]
    assert galera["spec"]["replicas"] == 3


def test_galera_peers_cover_every_node(engine, make_service):
    ms = make_service(database={"enabled": True, "replicas": 1, "highAvailability": {"enabled": True}})
    galera = TopologySelector(engine).build(ms)[-1].body

    script = galera["spec"]["template"]["spec"]["initContainers"][0]["command"][-1]
    assert "radio-db-galera-0.radio-db-galera.default.svc.cluster.local" in script
    assert "radio-db-galera-1.radio-db-galera.default.svc.cluster.local" in script


def test_mysql_rejects_high_availability(make_service):
    ms = make_service(database={"enabled": True, "highAvailability": {"enabled": True}})

    with pytest.raises(ValidationError):
        TopologySelector(MySQLEngine()).build(ms)


def test_engine_registry():
    assert get_engine("MariaDB").name == "mariadb"
    assert get_engine("mysql").default_image == "mysql:8.0"
    with pytest.raises(ValidationError):
        get_engine("postgres")
