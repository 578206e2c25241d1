"""
Kubernetes Event Watcher.

Watches MusicService objects and the children the operator manages, and turns
every event into a work queue key for the owning parent. The watcher never
reconciles anything itself; missed events are covered by the periodic resync.
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from kubernetes_asyncio import watch
from kubernetes_asyncio.client import ApiException

from music_operator.config.logging import get_logger
from music_operator.config.settings import settings
from music_operator.models.music_service import API_GROUP, API_VERSION, KIND, PLURAL
from music_operator.store.kubernetes import KubernetesClientSet
from music_operator.utils import k8s
from music_operator.workers.controller import Controller

logger = get_logger(__name__)

WATCH_TIMEOUT_SECONDS = 300
WATCH_RETRY_SECONDS = 5.0

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

CHILD_SELECTOR = f"{k8s.MANAGED_BY_LABEL}={k8s.MANAGED_BY}"


def owner_parent(obj: Dict[str, Any]) -> Optional[str]:
    """Name of the MusicService controlling a child, if any."""
    for ref in (obj.get("metadata") or {}).get("ownerReferences") or []:
        if ref.get("kind") == KIND and ref.get("controller"):
            return ref.get("name")
    return None


class KubernetesEventWatcher:
    """
    Feeds the controller from Kubernetes watch streams.

    Parents:
    - ADDED/MODIFIED: enqueue (debounced)
    - MODIFIED with a deletion timestamp: cancel the running pass and requeue
    - DELETED: stop resyncing the key

    Children (StatefulSets, Services, HPAs carrying the managed-by label):
    - any event: enqueue the controlling parent
    """

    def __init__(
        self,
        clients: KubernetesClientSet,
        controller: Controller,
        namespace: Optional[str] = None,
    ):
        """
        Initialize event watcher.

        Args:
            clients: Connected Kubernetes API clients
            controller: Controller receiving the keys
            namespace: Namespace to watch (default: settings.watch_namespace, None for all)
        """
        self.clients = clients
        self.controller = controller
        self.namespace = namespace if namespace is not None else settings.watch_namespace
        self.running = False
        self._tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        """Start one watch loop per watched kind and run until stopped."""
        self.running = True
        logger.info("event_watcher_started", namespace=self.namespace or "*")

        self._tasks = [
            asyncio.create_task(self._watch_loop("musicservices", self._parent_source(), self.handle_parent_event)),
            asyncio.create_task(self._watch_loop("statefulsets", self._child_source(
                self.clients.apps_api.list_namespaced_stateful_set,
                self.clients.apps_api.list_stateful_set_for_all_namespaces,
            ), self.handle_child_event)),
            asyncio.create_task(self._watch_loop("services", self._child_source(
                self.clients.core_api.list_namespaced_service,
                self.clients.core_api.list_service_for_all_namespaces,
            ), self.handle_child_event)),
            asyncio.create_task(self._watch_loop("horizontalpodautoscalers", self._child_source(
                self.clients.autoscaling_api.list_namespaced_horizontal_pod_autoscaler,
                self.clients.autoscaling_api.list_horizontal_pod_autoscaler_for_all_namespaces,
            ), self.handle_child_event)),
        ]
        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("event_watcher_cancelled")
        finally:
            logger.info("event_watcher_stopped")

    async def stop(self) -> None:
        """Stop watching events."""
        logger.info("event_watcher_stopping")
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def handle_parent_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        metadata = obj.get("metadata") or {}
        namespace, name = metadata.get("namespace", "default"), metadata.get("name")
        if not name:
            return

        if event_type == DELETED:
            logger.info("music_service_deleted", namespace=namespace, name=name)
            self.controller.forget(namespace, name)
            self.controller.cancel_in_flight(namespace, name)
            return

        if metadata.get("deletionTimestamp"):
            self.controller.queue.track(f"{namespace}/{name}")
            self.controller.cancel_in_flight(namespace, name)
            return

        self.controller.enqueue(namespace, name)

    def handle_child_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        parent = owner_parent(obj)
        if parent is None:
            return
        namespace = (obj.get("metadata") or {}).get("namespace", "default")
        logger.debug(
            "child_event",
            event_type=event_type,
            kind=obj.get("kind"),
            name=(obj.get("metadata") or {}).get("name"),
            parent=parent,
        )
        self.controller.enqueue(namespace, parent)

    # ------------------------------------------------------------------

    def _parent_source(self) -> Callable[..., Any]:
        custom_api = self.clients.custom_api
        if self.namespace:
            def list_parents(**kwargs):
                return custom_api.list_namespaced_custom_object(
                    API_GROUP, API_VERSION, self.namespace, PLURAL, **kwargs
                )
        else:
            def list_parents(**kwargs):
                return custom_api.list_cluster_custom_object(API_GROUP, API_VERSION, PLURAL, **kwargs)
        return list_parents

    def _child_source(self, namespaced: Callable[..., Any], cluster: Callable[..., Any]) -> Callable[..., Any]:
        if self.namespace:
            def list_children(**kwargs):
                return namespaced(self.namespace, label_selector=CHILD_SELECTOR, **kwargs)
        else:
            def list_children(**kwargs):
                return cluster(label_selector=CHILD_SELECTOR, **kwargs)
        return list_children

    async def _watch_loop(
        self,
        resource: str,
        source: Callable[..., Any],
        handler: Callable[[str, Dict[str, Any]], None],
    ) -> None:
        resource_version: Optional[str] = None
        while self.running:
            kwargs: Dict[str, Any] = {"timeout_seconds": WATCH_TIMEOUT_SECONDS}
            if resource_version:
                kwargs["resource_version"] = resource_version

            w = watch.Watch()
            try:
                logger.debug("watch_opened", resource=resource, resource_version=resource_version)
                async for event in w.stream(source, **kwargs):
                    if isinstance(event, str):
                        # Resource definition not installed
                        logger.warning("watch_resource_missing", resource=resource, message=event)
                        await asyncio.sleep(WATCH_RETRY_SECONDS)
                        continue

                    obj = self._plain(event)
                    resource_version = (obj.get("metadata") or {}).get("resourceVersion") or resource_version
                    event_type = event.get("type")
                    if event_type not in (ADDED, MODIFIED, DELETED):
                        logger.debug("watch_event_ignored", resource=resource, event_type=event_type)
                        continue
                    handler(event_type, obj)
            except ApiException as e:
                if e.status == 410:
                    logger.info("watch_expired", resource=resource)
                    resource_version = None
                    continue
                logger.error("watch_api_error", resource=resource, status=e.status, reason=e.reason)
                await asyncio.sleep(WATCH_RETRY_SECONDS)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                logger.warning("watch_connection_error", resource=resource, error=str(e), error_type=type(e).__name__)
                await asyncio.sleep(WATCH_RETRY_SECONDS)
            except Exception as e:
                # A watch loop only exits on stop()
                logger.error("watch_unexpected_error", resource=resource, error=str(e), exc_info=True)
                await asyncio.sleep(WATCH_RETRY_SECONDS)
            finally:
                await w.close()

    def _plain(self, event: Dict[str, Any]) -> Dict[str, Any]:
        raw = event.get("raw_object")
        if isinstance(raw, dict):
            return raw
        obj = event.get("object")
        if isinstance(obj, dict):
            return obj
        return self.clients.api_client.sanitize_for_serialization(obj)
