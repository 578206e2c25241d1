"""
Tests for API error translation in the Kubernetes-backed store.
"""
import aiohttp
import pytest
from kubernetes_asyncio.client import ApiException

from music_operator.exceptions import (
    ConflictError,
    NotFoundError,
    OperatorException,
    TransientError,
    ValidationError,
)
from music_operator.store.kubernetes import KubernetesStateStore, translate_api_exception


async def raising(error):
    raise error


async def returning(value):
    return value


@pytest.mark.parametrize(
    "status,expected",
    [
        (404, NotFoundError),
        (409, ConflictError),
        (422, ValidationError),
        (429, TransientError),
        (503, TransientError),
    ],
)
def test_translate_api_exception(status, expected):
    error = translate_api_exception(ApiException(status=status, reason="x"), "StatefulSet", "default", "radio")

    assert isinstance(error, expected)
    assert error.details["status"] == status


def test_translate_unmapped_status():
    error = translate_api_exception(ApiException(status=403, reason="Forbidden"), "Service", "default", "radio")

    assert type(error) is OperatorException
    assert error.status_code == 403


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        aiohttp.ServerDisconnectedError(),
        aiohttp.ClientPayloadError("Response payload is not completed"),
        ConnectionResetError("reset by peer"),
    ],
)
async def test_connection_errors_are_transient(error):
    store = KubernetesStateStore()

    with pytest.raises(TransientError):
        await store._call("StatefulSet", "default", "radio", raising(error))


@pytest.mark.asyncio
async def test_api_errors_are_translated():
    store = KubernetesStateStore()

    with pytest.raises(ConflictError):
        await store._call("StatefulSet", "default", "radio", raising(ApiException(status=409, reason="Conflict")))


@pytest.mark.asyncio
async def test_dict_results_pass_through():
    store = KubernetesStateStore()

    assert await store._call("StatefulSet", "default", "radio", returning({"kind": "StatefulSet"})) == {
        "kind": "StatefulSet",
    }


@pytest.mark.asyncio
async def test_calls_without_connection_are_transient():
    store = KubernetesStateStore()

    with pytest.raises(TransientError):
        await store.get("StatefulSet", "default", "radio")
