import collections
import heapq
import itertools
import logging
import threading
import time

from computedomain_dra.errors import is_permanent_error
from computedomain_dra.utils import object_key

log = logging.getLogger(__name__)


class WorkQueue:
    """
    A keyed work queue with per-key exponential backoff.

    Each item is an API object plus the callback to run on it, keyed by
    namespace/name. At most one callback runs per key at a time; enqueueing
    a key that is waiting replaces its object with the newer one. A failing
    callback is retried with backoff unless the error is permanent.
    """

    def __init__(self, workers=1, base_delay=0.005, max_delay=1000.0):
        self.workers = workers
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._pending = {}
        self._queue = collections.deque()
        self._queued = set()
        self._processing = set()
        self._delayed = []
        self._failures = collections.Counter()
        self._counter = itertools.count()
        self._threads = []
        self._shutdown = False

    def enqueue(self, obj, callback):
        self.enqueue_with_key(object_key(obj), obj, callback)

    def enqueue_with_key(self, key, obj, callback):
        with self._cond:
            if self._shutdown:
                return
            self._pending[key] = (obj, callback)
            self._make_ready(key)

    def _make_ready(self, key):
        if key in self._processing or key in self._queued:
            return
        self._queue.append(key)
        self._queued.add(key)
        self._cond.notify()

    def backoff(self, key) -> float:
        return min(self.base_delay * (2 ** self._failures[key]), self.max_delay)

    def start(self):
        for i in range(self.workers):
            thread = threading.Thread(target=self._worker, name=f"workqueue-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self):
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []

    def _promote_delayed(self):
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            if key in self._pending:
                self._make_ready(key)

    def _next(self):
        with self._cond:
            while not self._shutdown:
                self._promote_delayed()
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key, self._pending.pop(key)
                timeout = None
                if self._delayed:
                    timeout = max(self._delayed[0][0] - time.monotonic(), 0)
                self._cond.wait(timeout)
            return None, None

    def _done(self, key, item, err):
        with self._cond:
            self._processing.discard(key)
            if err is None:
                self._failures.pop(key, None)
            elif is_permanent_error(err):
                log.error(f"Permanent error processing {key}, not retrying: {err}")
                self._failures.pop(key, None)
            else:
                delay = self.backoff(key)
                self._failures[key] += 1
                log.warning(f"Error processing {key}, retrying in {delay:.3f}s: {err}")
                # A newer object queued while running wins over the failed one
                self._pending.setdefault(key, item)
                heapq.heappush(self._delayed, (time.monotonic() + delay, next(self._counter), key))
                self._cond.notify()
                return
            if key in self._pending:
                self._make_ready(key)

    def _worker(self):
        while True:
            key, item = self._next()
            if key is None:
                return
            obj, callback = item
            err = None
            try:
                callback(obj)
            except Exception as e:
                err = e
            self._done(key, item, err)
