import logging
import threading
import time

from kubernetes import client, watch

import computedomain_dra.defaults as defaults
from computedomain_dra.utils import get_nested, object_key

log = logging.getLogger(__name__)


def uid_indexer(obj):
    uid = get_nested(obj, "metadata", "uid")
    return [uid] if uid else []


def label_indexer(label_key):
    """
    Index objects by the value of one of their labels.
    """

    def indexer(obj):
        value = get_nested(obj, "metadata", "labels", label_key)
        return [value] if value else []

    return indexer


class Informer:
    """
    A local cache of one kind of API object kept current by list and watch.

    Objects are stored as the plain dicts the API serves. Registered handlers
    are called from the informer thread on add, update and delete. Watches
    are short and resume from the last seen resourceVersion; a relist happens
    every resync_period or after a watch error (such as 410 Gone) and delivers
    an update for each cached object.
    """

    def __init__(
        self,
        list_func,
        name="",
        resync_period=defaults.INFORMER_RESYNC_PERIOD,
        watch_timeout=defaults.INFORMER_WATCH_TIMEOUT,
        **list_kwargs,
    ):
        self.list_func = list_func
        self.list_kwargs = list_kwargs
        self.name = name or getattr(list_func, "__name__", "informer")
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self._lock = threading.RLock()
        self._store = {}
        self._indexers = {}
        self._handlers = []
        self._synced = threading.Event()
        self._stop = threading.Event()
        self._thread = None
        self._watcher = None
        self._api_client = client.ApiClient()

    def add_indexers(self, indexers: dict):
        with self._lock:
            if self._synced.is_set():
                raise RuntimeError(f"informer {self.name} already started, cannot add indexers")
            self._indexers.update(indexers)

    def add_event_handler(self, on_add=None, on_update=None, on_delete=None):
        self._handlers.append((on_add, on_update, on_delete))

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"informer-{self.name}", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        watcher = self._watcher
        if watcher is not None:
            watcher.stop()
        # A watch blocked on a quiet stream ends at the latest when it times out
        if self._thread is not None:
            self._thread.join(timeout=self.watch_timeout + 5)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_cache_sync(self, timeout=None) -> bool:
        return self._synced.wait(timeout)

    def get(self, key):
        with self._lock:
            return self._store.get(key)

    def list(self):
        with self._lock:
            return list(self._store.values())

    def by_index(self, index_name, value):
        with self._lock:
            indexer = self._indexers.get(index_name)
            if indexer is None:
                raise KeyError(f"index {index_name} does not exist")
            return [obj for obj in self._store.values() if value in indexer(obj)]

    def get_by_index(self, index_name, value):
        """
        The single object with this index value, or None.
        """
        objects = self.by_index(index_name, value)
        if not objects:
            return None
        if len(objects) != 1:
            raise RuntimeError(f"multiple objects in {self.name} with {index_name}={value}")
        return objects[0]

    def mutate(self, obj):
        """
        Record an object this process just wrote, ahead of its watch event.
        """
        obj = self._to_dict(obj)
        with self._lock:
            self._store[object_key(obj)] = obj

    def replace(self, objects):
        """
        Replace the cache content with a full listing, notifying handlers.
        """
        events = []
        with self._lock:
            fresh = {}
            for obj in objects:
                fresh[object_key(obj)] = obj
            for key, obj in self._store.items():
                if key not in fresh:
                    events.append(("delete", obj, None))
            for key, obj in fresh.items():
                old = self._store.get(key)
                events.append(("add", obj, None) if old is None else ("update", old, obj))
            self._store = fresh
        self._synced.set()
        for event in events:
            self._dispatch(*event)

    def apply_event(self, event_type, obj):
        key = object_key(obj)
        with self._lock:
            old = self._store.get(key)
            if event_type == "DELETED":
                self._store.pop(key, None)
            else:
                self._store[key] = obj
        if event_type == "DELETED":
            self._dispatch("delete", obj, None)
        elif old is None:
            self._dispatch("add", obj, None)
        else:
            self._dispatch("update", old, obj)

    def _dispatch(self, kind, obj, new):
        for on_add, on_update, on_delete in self._handlers:
            try:
                if kind == "add" and on_add:
                    on_add(obj)
                elif kind == "update" and on_update:
                    on_update(obj, new)
                elif kind == "delete" and on_delete:
                    on_delete(obj)
            except Exception as e:
                log.error(f"Informer {self.name} handler failed on {kind} of {object_key(obj)}: {e}")

    def _to_dict(self, obj):
        if isinstance(obj, dict):
            return obj
        return self._api_client.sanitize_for_serialization(obj)

    def _list(self):
        response = self._to_dict(self.list_func(**self.list_kwargs))
        self.replace(response.get("items") or [])
        return get_nested(response, "metadata", "resourceVersion")

    def _watch(self, resource_version):
        """
        Watch from resource_version for at most watch_timeout seconds.

        Returns the resourceVersion to resume from, or None when the cache
        must be relisted.
        """
        w = watch.Watch()
        self._watcher = w
        try:
            if self._stop.is_set():
                return None
            stream = w.stream(
                self.list_func,
                resource_version=resource_version,
                timeout_seconds=self.watch_timeout,
                **self.list_kwargs,
            )
            for event in stream:
                if self._stop.is_set():
                    return None
                event_type = event["type"]
                raw = event.get("raw_object") or self._to_dict(event["object"])
                if event_type == "ERROR":
                    log.info(f"Informer {self.name} watch error, relisting: {raw.get('message')}")
                    return None
                resource_version = get_nested(raw, "metadata", "resourceVersion") or resource_version
                if event_type == "BOOKMARK":
                    continue
                self.apply_event(event_type, raw)
            return resource_version
        finally:
            w.stop()
            self._watcher = None

    def _run(self):
        delay = 1
        while not self._stop.is_set():
            try:
                resource_version = self._list()
                listed_at = time.monotonic()
                delay = 1
                while resource_version and not self._stop.is_set():
                    if time.monotonic() - listed_at >= self.resync_period:
                        break
                    resource_version = self._watch(resource_version)
            except client.ApiException as e:
                log.warning(f"Informer {self.name} list/watch failed ({e.status}), retrying in {delay}s")
                self._stop.wait(delay)
                delay = min(delay * 2, 60)
            except Exception as e:
                log.error(f"Informer {self.name} list/watch failed: {e}, retrying in {delay}s")
                self._stop.wait(delay)
                delay = min(delay * 2, 60)
