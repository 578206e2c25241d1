"""
Tests for database credential management.
"""
import pytest

from music_operator.models.resources import ResourceKind
from music_operator.services.credential_manager import (
    CredentialManager,
    decode_secret_value,
    generate_password,
    replication_needed,
)

SECRET = ResourceKind.SECRET.value


def test_generate_password_length():
    assert len(generate_password(16)) == 32
    assert generate_password(16) != generate_password(16)


def test_replication_needed(make_service):
    assert not replication_needed(make_service())
    assert not replication_needed(make_service(database={"enabled": True}))
    assert replication_needed(make_service(database={"enabled": True, "replicas": 1}))
    assert not replication_needed(
        make_service(database={"enabled": True, "replicas": 1, "replication": {"enabled": False}})
    )
    assert replication_needed(make_service(database={"enabled": True, "highAvailability": {"enabled": True}}))


@pytest.mark.asyncio
async def test_no_database_no_secrets(store, make_service):
    results = await CredentialManager(store).ensure(make_service())

    assert results == {}
    assert store.writes() == []


@pytest.mark.asyncio
async def test_root_password_from_spec(store, make_service):
    ms = make_service(database={"enabled": True, "rootPassword": "s3cret"})
    results = await CredentialManager(store).ensure(ms)

    assert results == {"radio-db-root": "created"}
    secret = store.peek(SECRET, "default", "radio-db-root")
    assert decode_secret_value(secret, "password") == "s3cret"
    assert secret["metadata"]["ownerReferences"][0]["uid"] == "uid-radio"


@pytest.mark.asyncio
async def test_credentials_are_created_once(store, make_service):
    manager = CredentialManager(store)
    ms = make_service(database={"enabled": True, "replicas": 2})

    first = await manager.ensure(ms)
    secret = store.peek(SECRET, "default", "radio-db-replication")
    store.clear_journal()
    second = await manager.ensure(ms)

    assert first == {"radio-db-root": "created", "radio-db-replication": "created"}
    assert second == {"radio-db-root": "unchanged", "radio-db-replication": "unchanged"}
    assert store.writes() == []
    assert decode_secret_value(secret, "username") == "repl"
    assert store.peek(SECRET, "default", "radio-db-replication")["data"] == secret["data"]


@pytest.mark.asyncio
async def test_changed_root_password_is_not_rotated(store, make_service):
    manager = CredentialManager(store)
    await manager.ensure(make_service(database={"enabled": True, "rootPassword": "first"}))
    await manager.ensure(make_service(database={"enabled": True, "rootPassword": "second"}))

    secret = store.peek(SECRET, "default", "radio-db-root")
    assert decode_secret_value(secret, "password") == "first"


@pytest.mark.asyncio
async def test_missing_key_is_backfilled(store, make_service):
    manager = CredentialManager(store)
    ms = make_service(database={"enabled": True, "replicas": 1})
    await manager.ensure(ms)

    secret = store.peek(SECRET, "default", "radio-db-replication")
    original_password = secret["data"]["password"]
    del secret["data"]["username"]
    await store.update(SECRET, secret)

    results = await manager.ensure(ms)
    repaired = store.peek(SECRET, "default", "radio-db-replication")

    assert results["radio-db-replication"] == "backfilled"
    assert decode_secret_value(repaired, "username") == "repl"
    assert repaired["data"]["password"] == original_password


@pytest.mark.asyncio
async def test_cleanup_deletes_both_secrets(store, make_service):
    manager = CredentialManager(store)
    await manager.ensure(make_service(database={"enabled": True, "replicas": 1}))

    assert await manager.cleanup("default", "radio") == 2
    assert await manager.cleanup("default", "radio") == 0
    assert store.peek(SECRET, "default", "radio-db-root") is None
