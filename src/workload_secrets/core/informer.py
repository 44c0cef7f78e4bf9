"""List and watch sources for controller events.

This module mirrors watched Kubernetes objects into a local cache and
translates their changes into controller events on a queue.
"""

import queue
import threading
import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from icecream import ic
from kubernetes import watch
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from workload_secrets import console
from workload_secrets.models import NAMESPACE_ALL

WATCH_RETRY_INTERVAL = timedelta(seconds=5)
# Server-side length of one watch request; bounds how long a stop goes unnoticed.
WATCH_WINDOW = timedelta(seconds=5)


class ObjectStore:
    """Thread-safe cache of Kubernetes objects keyed by (namespace, name)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[tuple[str, str], Any] = {}

    def get(self, namespace: str, name: str) -> Any | None:
        with self._lock:
            return self._items.get((namespace, name))

    def put(self, obj: Any) -> Any | None:
        """Store an object and return the one it replaced, if any."""
        key = (obj.metadata.namespace, obj.metadata.name)
        with self._lock:
            old = self._items.get(key)
            self._items[key] = obj
            return old

    def pop(self, namespace: str, name: str) -> Any | None:
        with self._lock:
            return self._items.pop((namespace, name), None)

    def keys(self, namespace: str = NAMESPACE_ALL) -> list[tuple[str, str]]:
        """Return the cached keys of a namespace, or of all namespaces for ``""``."""
        with self._lock:
            return [key for key in self._items if namespace == NAMESPACE_ALL or key[0] == namespace]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class Informer:
    """Lists and watches one object type and queues controller events.

    The cache is updated before the matching event is queued. A full
    re-list runs every ``resync_period``; objects already cached are
    re-announced through ``updated`` and objects that disappeared through
    ``deleted``. Between re-lists the watch runs in short windows resumed
    from the last resource version, so a stop is noticed within one window.

    Attributes:
        kind: Human readable object type, used in log messages.
        events: Queue of controller events.
        store: Local cache of the watched objects.
        synced: Set once the initial list of every namespace is cached.

    """

    def __init__(
        self,
        kind: str,
        *,
        list_namespaced: Callable[..., Any],
        list_all: Callable[..., Any],
        namespaces: list[str],
        resync_period: timedelta,
        field_selector: str | None = None,
        added: Callable[[Any], Any] | None = None,
        updated: Callable[[Any, Any], Any] | None = None,
        deleted: Callable[[Any], Any] | None = None,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
        retry_interval: timedelta = WATCH_RETRY_INTERVAL,
        watch_window: timedelta = WATCH_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.kind = kind
        self._list_namespaced = list_namespaced
        self._list_all = list_all
        # Watching all namespaces covers every other entry.
        self.namespaces = [NAMESPACE_ALL] if NAMESPACE_ALL in namespaces else sorted(set(namespaces))
        self.resync_period = resync_period
        self.field_selector = field_selector
        self._added = added
        self._updated = updated
        self._deleted = deleted
        self._watch_factory = watch_factory
        self.retry_interval = retry_interval
        self.watch_window = min(watch_window, resync_period)
        self._clock = clock

        self.events: queue.Queue = queue.Queue()
        self.store = ObjectStore()
        self.synced = threading.Event()

    def _list_call(self, namespace: str) -> tuple[Callable[..., Any], tuple, dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        if self.field_selector:
            kwargs["field_selector"] = self.field_selector
        if namespace == NAMESPACE_ALL:
            return self._list_all, (), kwargs
        return self._list_namespaced, (namespace,), kwargs

    def _emit(self, factory: Callable[..., Any] | None, *objs: Any) -> None:
        if factory is not None:
            self.events.put(factory(*objs))

    def relist(self, namespace: str) -> str | None:
        """List a namespace, reconcile the cache with it, and queue events.

        Returns:
            The resource version to start watching from.

        Raises:
            ApiException: If the list call fails.
            HTTPError: If the API server cannot be reached.

        """
        func, args, kwargs = self._list_call(namespace)
        result = func(*args, **kwargs)

        seen: set[tuple[str, str]] = set()
        for obj in result.items or []:
            seen.add((obj.metadata.namespace, obj.metadata.name))
            old = self.store.put(obj)
            if old is None:
                self._emit(self._added, obj)
            else:
                self._emit(self._updated, old, obj)

        for key in self.store.keys(namespace):
            if key not in seen:
                old = self.store.pop(*key)
                if old is not None:
                    self._emit(self._deleted, old)

        ic(self.kind, namespace, len(seen))
        return result.metadata.resource_version if result.metadata else None

    def apply(self, event_type: str, obj: Any) -> None:
        """Apply one watch notification to the cache and queue its event."""
        metadata = getattr(obj, "metadata", None)
        if metadata is None or not getattr(metadata, "name", None):
            console.warning(f"Dropping {self.kind} {event_type} notification without metadata: {obj!r}")
            return

        match event_type:
            case "ADDED" | "MODIFIED":
                old = self.store.put(obj)
                if old is None:
                    self._emit(self._added, obj)
                else:
                    self._emit(self._updated, old, obj)
            case "DELETED":
                self.store.pop(metadata.namespace, metadata.name)
                self._emit(self._deleted, obj)
            case "BOOKMARK":
                pass
            case _:
                console.warning(f"Dropping {self.kind} notification of unknown type {event_type}")

    def _watch(self, namespace: str, resource_version: str | None, stop: threading.Event) -> str | None:
        """Run one watch window and return the last resource version seen."""
        func, args, kwargs = self._list_call(namespace)
        if resource_version:
            kwargs["resource_version"] = resource_version

        w = self._watch_factory()
        stream = w.stream(func, *args, timeout_seconds=max(1, int(self.watch_window.total_seconds())), **kwargs)
        for event in stream:
            if stop.is_set():
                w.stop()
                break
            if event["type"] == "ERROR":
                raw = event.get("raw_object") or {}
                raise ApiException(status=raw.get("code", 500), reason=raw.get("message", "watch error"))
            self.apply(event["type"], event["object"])
            metadata = getattr(event["object"], "metadata", None)
            resource_version = getattr(metadata, "resource_version", None) or resource_version
        return resource_version

    def _watch_loop(self, namespace: str, resource_version: str | None, stop: threading.Event) -> None:
        scope = namespace or "all namespaces"
        next_resync = self._clock() + self.resync_period.total_seconds()
        while not stop.is_set():
            try:
                if resource_version is None or self._clock() >= next_resync:
                    resource_version = self.relist(namespace)
                    next_resync = self._clock() + self.resync_period.total_seconds()
                resource_version = self._watch(namespace, resource_version, stop)
                continue
            except ApiException as e:
                resource_version = None
                if e.status == 410:
                    console.debug(f"{self.kind} watch in {scope} expired, re-listing")
                    continue
                console.error(f"Failed to watch {self.kind} objects in {scope} (error: {e.status} {e.reason})")
            except HTTPError as e:
                resource_version = None
                console.error(f"Failed to watch {self.kind} objects in {scope} (error: {e})")
            if stop.wait(self.retry_interval.total_seconds()):
                return


    def run(self, stop: threading.Event) -> None:
        """List every namespace, mark the cache synced, then watch until ``stop`` is set."""
        versions: dict[str, str | None] = {}
        for namespace in self.namespaces:
            while not stop.is_set():
                try:
                    versions[namespace] = self.relist(namespace)
                    break
                except (ApiException, HTTPError) as e:
                    console.error(f"Failed to list {self.kind} objects in {namespace or 'all namespaces'}: {e}")
                    if stop.wait(self.retry_interval.total_seconds()):
                        return
        if stop.is_set():
            return

        self.synced.set()
        console.info(f"{self.kind.capitalize()} cache synced ({len(self.store)} objects)")

        threads = [
            threading.Thread(
                target=self._watch_loop,
                args=(namespace, versions[namespace], stop),
                name=f"{self.kind}-watch-{namespace or 'all'}",
                daemon=True,
            )
            for namespace in self.namespaces
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
