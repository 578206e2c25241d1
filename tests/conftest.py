"""
Pytest configuration and fixtures.
"""
import copy
from typing import Any, AsyncGenerator, Callable, Dict

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from music_operator.config.settings import settings
from music_operator.main import app
from music_operator.models.music_service import MusicService
from music_operator.models.resources import ResourceKind
from music_operator.services.database_engine import MariaDBEngine
from music_operator.services.reconciler import MusicServiceReconciler
from music_operator.services.resource_builder import ResourceBuilder
from music_operator.store.memory import InMemoryStateStore

NAMESPACE = "default"
NAME = "radio"

BASE_SPEC: Dict[str, Any] = {
    "replicas": 3,
    "image": "mixcorp/music:1.4",
    "port": 8080,
    "storage": {"size": "10Gi"},
    "streaming": {"bitrate": "320k", "maxConnections": 500},
}


def music_service_body(name: str = NAME, namespace: str = NAMESPACE, **spec: Any) -> Dict[str, Any]:
    """Raw MusicService object; keyword arguments override top-level spec keys."""
    body_spec = copy.deepcopy(BASE_SPEC)
    body_spec.update(copy.deepcopy(spec))
    return {
        "apiVersion": "music.mixcorp.org/v1",
        "kind": "MusicService",
        "metadata": {"name": name, "namespace": namespace},
        "spec": body_spec,
    }


@pytest.fixture(scope="session")
def test_settings():
    """Override settings for testing."""
    settings.environment = "testing"
    settings.debug = True
    return settings


@pytest.fixture
def make_service() -> Callable[..., MusicService]:
    """Factory for parsed MusicService models with a uid."""

    def factory(name: str = NAME, namespace: str = NAMESPACE, **spec: Any) -> MusicService:
        body = music_service_body(name, namespace, **spec)
        body["metadata"]["uid"] = f"uid-{name}"
        return MusicService.model_validate(body)

    return factory


@pytest.fixture
def engine() -> MariaDBEngine:
    return MariaDBEngine()


@pytest.fixture
def builder(engine) -> ResourceBuilder:
    return ResourceBuilder(engine)


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def reconciler(store, engine) -> MusicServiceReconciler:
    return MusicServiceReconciler(store, engine=engine)


@pytest.fixture
def seed_service(store) -> Callable[..., Dict[str, Any]]:
    """Insert a MusicService into the in-memory store."""

    def seed(name: str = NAME, namespace: str = NAMESPACE, **spec: Any) -> Dict[str, Any]:
        return store.seed(ResourceKind.MUSIC_SERVICE.value, music_service_body(name, namespace, **spec))

    return seed


@pytest_asyncio.fixture
async def test_client() -> AsyncGenerator[AsyncClient, None]:
    """Create test client (the cluster lifespan is not run)."""
    app.state.controller = None
    app.state.started = False
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
