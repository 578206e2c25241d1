"""
Kubernetes-backed state store.

Thin adapter over kubernetes_asyncio: typed APIs for built-in kinds,
CustomObjectsApi for MusicService. Results are converted to plain camelCase
dicts with ApiClient.sanitize_for_serialization so the rest of the operator
never sees client model classes.
"""
import asyncio
from typing import Any, Awaitable, Dict, List, Optional

import aiohttp
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client import ApiException
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from music_operator.config.logging import get_logger
from music_operator.config.settings import settings
from music_operator.exceptions import (
    ConflictError,
    NotFoundError,
    OperatorException,
    TransientError,
    ValidationError,
)
from music_operator.models.music_service import API_GROUP, API_VERSION, PLURAL
from music_operator.models.resources import ResourceKind
from music_operator.services import metrics
from music_operator.store.base import Resource, StateStore

logger = get_logger(__name__)

# kind -> (api attribute, method suffix)
_TYPED_KINDS = {
    ResourceKind.STATEFUL_SET.value: ("apps_api", "stateful_set"),
    ResourceKind.SERVICE.value: ("core_api", "service"),
    ResourceKind.SECRET.value: ("core_api", "secret"),
    ResourceKind.PERSISTENT_VOLUME_CLAIM.value: ("core_api", "persistent_volume_claim"),
    ResourceKind.EVENT.value: ("core_api", "event"),
    ResourceKind.HORIZONTAL_POD_AUTOSCALER.value: ("autoscaling_api", "horizontal_pod_autoscaler"),
}

# Kinds without a status subresource write path
_NO_STATUS = {
    ResourceKind.SECRET.value,
    ResourceKind.EVENT.value,
}


class KubernetesClientSet:
    """Container for Kubernetes API clients."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.apps_api = client.AppsV1Api(api_client)
        self.core_api = client.CoreV1Api(api_client)
        self.autoscaling_api = client.AutoscalingV2Api(api_client)
        self.custom_api = client.CustomObjectsApi(api_client)

    async def close(self):
        """Close all API clients."""
        if self.api_client:
            await self.api_client.close()


def translate_api_exception(exc: ApiException, kind: str, namespace: str, name: str) -> OperatorException:
    """
    Map an API status code onto the operator error taxonomy.

    Args:
        exc: Exception raised by kubernetes_asyncio
        kind: Kind of the object involved
        namespace: Namespace of the object involved
        name: Name of the object involved

    Returns:
        NotFoundError, ConflictError, ValidationError or TransientError
    """
    status = exc.status or 0
    details = {"status": status, "reason": exc.reason}
    if status == 404:
        return NotFoundError(kind, namespace, name, details=details)
    if status == 409:
        return ConflictError(f"{kind} '{namespace}/{name}': {exc.reason}", details=details)
    if status in (400, 422):
        return ValidationError(f"{kind} '{namespace}/{name}' rejected: {exc.body or exc.reason}", details=details)
    if status in (408, 429) or status >= 500:
        return TransientError(f"{kind} '{namespace}/{name}': API server returned {status}", details=details)
    return OperatorException(
        f"{kind} '{namespace}/{name}': API server returned {status}",
        status_code=status or 500,
        details=details,
    )


class KubernetesStateStore(StateStore):
    """
    StateStore over a live cluster.

    Call connect() before use; the connection bootstrap is retried, the
    individual calls are not (retry is the work queue's job).
    """

    def __init__(self, client_set: Optional[KubernetesClientSet] = None):
        self.clients = client_set

    @retry(
        stop=stop_after_attempt(settings.k8s_connect_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((ApiException, aiohttp.ClientError, OSError, asyncio.TimeoutError)),
        reraise=True,
    )
    async def connect(self) -> None:
        """Load cluster credentials and verify the API server answers."""
        if self.clients is not None:
            return

        if settings.k8s_in_cluster:
            config.load_incluster_config()
            api_client = client.ApiClient()
        else:
            configuration = client.Configuration()
            await config.load_kube_config(
                config_file=settings.kubeconfig_path,
                client_configuration=configuration,
            )
            api_client = client.ApiClient(configuration=configuration)

        clients = KubernetesClientSet(api_client)
        try:
            version = await client.VersionApi(api_client).get_code()
        except Exception:
            await clients.close()
            raise
        self.clients = clients
        logger.info(
            "kubernetes_connected",
            in_cluster=settings.k8s_in_cluster,
            server_version=getattr(version, "git_version", None),
        )

    async def close(self) -> None:
        if self.clients is not None:
            await self.clients.close()
            self.clients = None

    # ------------------------------------------------------------------

    async def get(self, kind: str, namespace: str, name: str) -> Resource:
        if kind == ResourceKind.MUSIC_SERVICE.value:
            return await self._call(
                kind, namespace, name,
                self._clients.custom_api.get_namespaced_custom_object(
                    group=API_GROUP, version=API_VERSION, namespace=namespace, plural=PLURAL, name=name,
                ),
            )
        method = self._typed(kind, "read_namespaced")
        return await self._call(kind, namespace, name, method(name=name, namespace=namespace))

    async def create(self, kind: str, body: Resource) -> Resource:
        namespace, name = _identity(body)
        metrics.record_store_write(kind, "create")
        if kind == ResourceKind.MUSIC_SERVICE.value:
            return await self._call(
                kind, namespace, name,
                self._clients.custom_api.create_namespaced_custom_object(
                    group=API_GROUP, version=API_VERSION, namespace=namespace, plural=PLURAL, body=body,
                ),
            )
        method = self._typed(kind, "create_namespaced")
        return await self._call(kind, namespace, name, method(namespace=namespace, body=body))

    async def update(self, kind: str, body: Resource) -> Resource:
        namespace, name = _identity(body)
        metrics.record_store_write(kind, "update")
        if kind == ResourceKind.MUSIC_SERVICE.value:
            return await self._call(
                kind, namespace, name,
                self._clients.custom_api.replace_namespaced_custom_object(
                    group=API_GROUP, version=API_VERSION, namespace=namespace, plural=PLURAL,
                    name=name, body=body,
                ),
            )
        method = self._typed(kind, "replace_namespaced")
        return await self._call(kind, namespace, name, method(name=name, namespace=namespace, body=body))

    async def update_status(self, kind: str, body: Resource) -> Resource:
        namespace, name = _identity(body)
        metrics.record_store_write(kind, "update_status")
        if kind == ResourceKind.MUSIC_SERVICE.value:
            return await self._call(
                kind, namespace, name,
                self._clients.custom_api.replace_namespaced_custom_object_status(
                    group=API_GROUP, version=API_VERSION, namespace=namespace, plural=PLURAL,
                    name=name, body=body,
                ),
            )
        if kind in _NO_STATUS:
            raise ValidationError(f"{kind} has no status subresource")
        api_name, suffix = _TYPED_KINDS[kind]
        method = getattr(getattr(self._clients, api_name), f"replace_namespaced_{suffix}_status")
        return await self._call(kind, namespace, name, method(name=name, namespace=namespace, body=body))

    async def delete(self, kind: str, namespace: str, name: str) -> None:
        metrics.record_store_write(kind, "delete")
        if kind == ResourceKind.MUSIC_SERVICE.value:
            await self._call(
                kind, namespace, name,
                self._clients.custom_api.delete_namespaced_custom_object(
                    group=API_GROUP, version=API_VERSION, namespace=namespace, plural=PLURAL, name=name,
                ),
            )
            return
        method = self._typed(kind, "delete_namespaced")
        await self._call(
            kind, namespace, name,
            method(name=name, namespace=namespace, propagation_policy="Background"),
        )

    async def list(
        self,
        kind: str,
        namespace: Optional[str],
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Resource]:
        selector = ",".join(f"{k}={v}" for k, v in sorted((labels or {}).items())) or None
        kwargs: Dict[str, Any] = {}
        if selector:
            kwargs["label_selector"] = selector

        if kind == ResourceKind.MUSIC_SERVICE.value:
            custom_api = self._clients.custom_api
            if namespace is None:
                call = custom_api.list_cluster_custom_object(
                    group=API_GROUP, version=API_VERSION, plural=PLURAL, **kwargs,
                )
            else:
                call = custom_api.list_namespaced_custom_object(
                    group=API_GROUP, version=API_VERSION, namespace=namespace, plural=PLURAL, **kwargs,
                )
        elif namespace is None:
            call = self._list_all(kind, **kwargs)
        else:
            call = self._typed(kind, "list_namespaced")(namespace=namespace, **kwargs)

        result = await self._call(kind, namespace or "", "", call)
        items = result.get("items") or []
        for item in items:
            # List responses omit per-item kind
            item.setdefault("kind", kind)
        return items

    # ------------------------------------------------------------------

    @property
    def _clients(self) -> KubernetesClientSet:
        if self.clients is None:
            raise TransientError("Kubernetes client is not connected")
        return self.clients

    def _typed(self, kind: str, verb: str):
        if kind not in _TYPED_KINDS:
            raise ValidationError(f"Unsupported kind: {kind}")
        api_name, suffix = _TYPED_KINDS[kind]
        return getattr(getattr(self._clients, api_name), f"{verb}_{suffix}")

    def _list_all(self, kind: str, **kwargs):
        if kind not in _TYPED_KINDS:
            raise ValidationError(f"Unsupported kind: {kind}")
        api_name, suffix = _TYPED_KINDS[kind]
        method = getattr(getattr(self._clients, api_name), f"list_{suffix}_for_all_namespaces")
        return method(**kwargs)

    async def _call(self, kind: str, namespace: str, name: str, call: Awaitable[Any]) -> Resource:
        try:
            result = await call
        except ApiException as e:
            error = translate_api_exception(e, kind, namespace, name)
            if not isinstance(error, NotFoundError):
                logger.warning(
                    "kubernetes_api_error",
                    kind=kind,
                    namespace=namespace,
                    name=name,
                    status=e.status,
                    error_type=type(error).__name__,
                )
            raise error from e
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.warning("kubernetes_connection_error", kind=kind, namespace=namespace, name=name, error=str(e))
            raise TransientError(f"{kind} '{namespace}/{name}': {e}") from e

        if isinstance(result, dict):
            return result
        return self._clients.api_client.sanitize_for_serialization(result)


def _identity(body: Resource):
    metadata = body.get("metadata") or {}
    return metadata.get("namespace", "default"), metadata.get("name", "")
