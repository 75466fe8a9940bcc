"""
Watch Cache - locally consistent views of the watched cluster objects.

Each Informer lists a resource, then watches it from the listed resource
version, keeping a Store up to date and notifying its handlers. Every
resync period all cached objects are re-notified as updates, which lets
the controller converge even when an event was missed.

Informers run their blocking list/watch loops in threads. Stores are
guarded by a lock so the event loop can read them at any time.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from events import EventType, WatchEvent
from models import (
    REPLICATION_CLASS_PLURAL,
    REPLICATION_GROUP,
    REPLICATION_PLURAL,
    REPLICATION_VERSION,
    Namespace,
    ReplicationDescriptor,
    ReplicationPolicy,
    ResourceKind,
    StorageClass,
    VolumeClaim,
    make_key,
)

logger = logging.getLogger(__name__)

# Kinds whose changes can alter a reconcile outcome; the others are only cached
CLASSIFIED_KINDS = (ResourceKind.CLAIM, ResourceKind.NAMESPACE, ResourceKind.DESCRIPTOR)


def labels_match(labels: Dict[str, str], selector: Dict[str, str]) -> bool:
    """Equality based label selection: every selector pair must be present."""
    return all(labels.get(k) == v for k, v in selector.items())


class Store:
    """Thread-safe map of cache keys to model objects of one kind."""

    def __init__(self, kind: ResourceKind):
        self.kind = kind
        self._items: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, namespace: str, name: str) -> Optional[Any]:
        """Return the cached object, or None when it is not cached."""
        with self._lock:
            return self._items.get(make_key(namespace, name))

    def list(
        self,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Any]:
        """
        List cached objects.

        Args:
            namespace: Only objects in this namespace when given.
            labels: Only objects carrying all of these labels when given.

        Returns:
            Matching objects, in no particular order.
        """
        with self._lock:
            items = list(self._items.values())

        if namespace is not None:
            items = [obj for obj in items if getattr(obj, "namespace", "") == namespace]
        if labels:
            items = [
                obj for obj in items if labels_match(getattr(obj, "labels", {}), labels)
            ]
        return items

    def keys(self) -> Set[str]:
        with self._lock:
            return set(self._items)

    def upsert(self, obj: Any) -> Optional[Any]:
        """Insert or replace an object, returning the previous version."""
        with self._lock:
            old = self._items.get(obj.key)
            self._items[obj.key] = obj
            return old

    def remove(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._items.pop(key, None)


class Informer:
    """
    List+watch loop feeding a Store and event handlers.

    Handlers are called from the informer thread: ``on_add(obj)``,
    ``on_update(old, new)`` and ``on_delete(obj)``.
    """

    def __init__(
        self,
        kind: ResourceKind,
        store: Store,
        model: Any,
        list_fn: Callable[..., Any],
        list_args: Tuple[Any, ...] = (),
        resync_period: int = 1800,
        serializer: Optional[Callable[[Any], Any]] = None,
        retry_delay: float = 5.0,
    ):
        self.kind = kind
        self.store = store
        self.model = model
        self.list_fn = list_fn
        self.list_args = list_args
        self.resync_period = resync_period
        self.watch_timeout = max(1, min(300, resync_period))
        self.serializer = serializer or (lambda obj: obj)
        self.retry_delay = retry_delay

        self.synced = threading.Event()
        self._handlers: List[Tuple[Optional[Callable], ...]] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._watcher: Optional[watch.Watch] = None
        self._last_resync = time.monotonic()

    def add_event_handler(
        self,
        on_add: Optional[Callable[[Any], None]] = None,
        on_update: Optional[Callable[[Any, Any], None]] = None,
        on_delete: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self._handlers.append((on_add, on_update, on_delete))

    def publish_to(self, channel: asyncio.Queue, loop: asyncio.AbstractEventLoop) -> None:
        """Forward every notification to an asyncio channel as a WatchEvent."""

        def put(event: WatchEvent) -> None:
            loop.call_soon_threadsafe(channel.put_nowait, event)

        self.add_event_handler(
            on_add=lambda obj: put(WatchEvent(self.kind, EventType.ADDED, obj)),
            on_update=lambda old, new: put(
                WatchEvent(self.kind, EventType.MODIFIED, new, old)
            ),
            on_delete=lambda obj: put(WatchEvent(self.kind, EventType.DELETED, obj)),
        )

    def _dispatch(self, event_type: EventType, obj: Any, old: Any = None) -> None:
        for on_add, on_update, on_delete in self._handlers:
            try:
                if event_type == EventType.ADDED and on_add:
                    on_add(obj)
                elif event_type == EventType.MODIFIED and on_update:
                    on_update(old, obj)
                elif event_type == EventType.DELETED and on_delete:
                    on_delete(obj)
            except Exception as e:
                logger.error(f"{self.kind.value} event handler failed: {e}", exc_info=True)

    def _store_object(self, obj: Any) -> None:
        old = self.store.upsert(obj)
        if old is None:
            self._dispatch(EventType.ADDED, obj)
        else:
            self._dispatch(EventType.MODIFIED, obj, old)

    # Lifecycle

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run, name=f"informer-{self.kind.value}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        watcher = self._watcher
        if watcher is not None:
            watcher.stop()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        """Relist and rewatch until stopped."""
        while not self._stop.is_set():
            try:
                resource_version = self.list_and_sync()
                self.watch(resource_version)
            except ApiException as e:
                if e.status == 410:
                    logger.info(f"{self.kind.value} watch expired, relisting")
                    continue
                logger.error(f"failed to list/watch {self.kind.value}: {e.status} {e.reason}")
                self._stop.wait(self.retry_delay)
            except Exception as e:
                logger.error(f"failed to list/watch {self.kind.value}: {e}", exc_info=True)
                self._stop.wait(self.retry_delay)

    # List and watch

    def list_and_sync(self) -> str:
        """
        List the resource and replace the store contents.

        Returns:
            The resource version to start watching from.
        """
        result = self.serializer(self.list_fn(*self.list_args)) or {}
        seen = set()
        for item in result.get("items") or []:
            obj = self.model.from_dict(item)
            seen.add(obj.key)
            self._store_object(obj)

        for key in self.store.keys() - seen:
            old = self.store.remove(key)
            if old is not None:
                self._dispatch(EventType.DELETED, old)

        if not self.synced.is_set():
            logger.info(f"{self.kind.value} cache synced with {len(seen)} objects")
        self.synced.set()
        self._last_resync = time.monotonic()
        return (result.get("metadata") or {}).get("resourceVersion", "")

    def watch(self, resource_version: str) -> None:
        """Stream changes until stopped or until the watch must be relisted."""
        while not self._stop.is_set():
            self._watcher = watch.Watch()
            stream = self._watcher.stream(
                self.list_fn,
                *self.list_args,
                resource_version=resource_version,
                timeout_seconds=self.watch_timeout,
            )
            for event in stream:
                raw = event.get("raw_object") or {}
                if event["type"] == "ERROR":
                    logger.info(
                        f"{self.kind.value} watch error {raw.get('code')}: "
                        f"{raw.get('message', '')}, relisting"
                    )
                    return
                resource_version = self.handle_event(event["type"], raw) or resource_version
                self.maybe_resync()
                if self._stop.is_set():
                    return
            self.maybe_resync()

    def handle_event(self, event_type: str, raw: Dict[str, Any]) -> str:
        """Apply one watch event to the store and notify handlers."""
        if event_type == "BOOKMARK":
            return (raw.get("metadata") or {}).get("resourceVersion", "")

        obj = self.model.from_dict(raw)
        if event_type == "DELETED":
            old = self.store.remove(obj.key)
            self._dispatch(EventType.DELETED, old if old is not None else obj)
        else:
            self._store_object(obj)
        return (raw.get("metadata") or {}).get("resourceVersion", "")

    def maybe_resync(self) -> None:
        if time.monotonic() - self._last_resync >= self.resync_period:
            self.resync()

    def resync(self) -> None:
        """Re-notify every cached object as an update."""
        self._last_resync = time.monotonic()
        for obj in self.store.list():
            self._dispatch(EventType.MODIFIED, obj, obj)


class ClusterCache:
    """The stores and informers of every kind the replicator reads."""

    def __init__(self):
        self.claims = Store(ResourceKind.CLAIM)
        self.namespaces = Store(ResourceKind.NAMESPACE)
        self.storage_classes = Store(ResourceKind.STORAGE_CLASS)
        self.policies = Store(ResourceKind.POLICY)
        self.descriptors = Store(ResourceKind.DESCRIPTOR)
        self.informers: Dict[ResourceKind, Informer] = {}

    @classmethod
    def from_api_client(
        cls, api_client: client.ApiClient, resync_period: int = 1800
    ) -> "ClusterCache":
        """Build a cache with informers backed by the Kubernetes API."""
        cache = cls()
        core = client.CoreV1Api(api_client)
        storage = client.StorageV1Api(api_client)
        custom = client.CustomObjectsApi(api_client)

        sources: Iterable[Tuple[ResourceKind, Store, Any, Callable, Tuple]] = [
            (
                ResourceKind.CLAIM,
                cache.claims,
                VolumeClaim,
                core.list_persistent_volume_claim_for_all_namespaces,
                (),
            ),
            (ResourceKind.NAMESPACE, cache.namespaces, Namespace, core.list_namespace, ()),
            (
                ResourceKind.STORAGE_CLASS,
                cache.storage_classes,
                StorageClass,
                storage.list_storage_class,
                (),
            ),
            (
                ResourceKind.POLICY,
                cache.policies,
                ReplicationPolicy,
                custom.list_cluster_custom_object,
                (REPLICATION_GROUP, REPLICATION_VERSION, REPLICATION_CLASS_PLURAL),
            ),
            (
                ResourceKind.DESCRIPTOR,
                cache.descriptors,
                ReplicationDescriptor,
                custom.list_cluster_custom_object,
                (REPLICATION_GROUP, REPLICATION_VERSION, REPLICATION_PLURAL),
            ),
        ]
        for kind, store, model, list_fn, list_args in sources:
            cache.informers[kind] = Informer(
                kind,
                store,
                model,
                list_fn,
                list_args=list_args,
                resync_period=resync_period,
                serializer=api_client.sanitize_for_serialization,
            )
        return cache

    def publish_to(
        self,
        channel: asyncio.Queue,
        loop: asyncio.AbstractEventLoop,
        kinds: Iterable[ResourceKind] = CLASSIFIED_KINDS,
    ) -> None:
        for kind in kinds:
            informer = self.informers.get(kind)
            if informer is not None:
                informer.publish_to(channel, loop)

    @property
    def synced(self) -> bool:
        return all(informer.synced.is_set() for informer in self.informers.values())

    def start(self) -> None:
        for informer in self.informers.values():
            informer.start()
        logger.info(f"Started {len(self.informers)} informers")

    def stop(self) -> None:
        for informer in self.informers.values():
            informer.stop()

    def join(self, timeout: float) -> bool:
        """
        Wait for the informer threads of a stopped cache to exit.

        A watch blocked on the API server only notices the stop when its
        stream yields, so threads still running after ``timeout`` seconds
        are left behind (they are daemon threads).

        Returns:
            True when every thread exited in time.
        """
        deadline = time.monotonic() + timeout
        for informer in self.informers.values():
            informer.join(max(0.0, deadline - time.monotonic()))

        alive = [i.kind.value for i in self.informers.values() if i.is_alive()]
        if alive:
            logger.warning(f"informers still running after {timeout}s: {', '.join(alive)}")
        return not alive

    async def wait_for_sync(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every informer completed its initial list.

        Returns:
            True when synced, False if the timeout elapsed first.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self.synced:
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(0.1)
        return True
