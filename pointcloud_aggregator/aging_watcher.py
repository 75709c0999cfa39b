"""
Background eviction of fragments older than the configured max age.

A single thread drains a priority queue keyed by eviction deadline instead of running one timer per fragment.
"""
import enum
import heapq
import logging
import threading

from pointcloud_aggregator.utils import get_current_time

_logger = logging.getLogger(__name__)


class WatcherState(enum.Enum):
    IDLE = 'idle'
    EVALUATING = 'evaluating'
    STOPPED = 'stopped'


class AgingWatcher:
    def __init__(self, expiry_handler, name='aging_watcher', poll_interval=0.1):
        """
        :param expiry_handler: called with the fragment once its deadline has passed
        :param name: thread name
        :param poll_interval: longest time the loop sleeps before re-evaluating the queue
        """
        self._expiry_handler = expiry_handler
        self._poll_interval = poll_interval
        self._heap = []
        self._condition = threading.Condition()
        self._keep_alive = True
        self._state = WatcherState.IDLE
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def state(self):
        return self._state

    def start(self):
        self._thread.start()

    def schedule(self, fragment, deadline):
        with self._condition:
            if not self._keep_alive:
                return
            # ties on the deadline are broken by timestamp then label, the fragment itself is never compared
            heapq.heappush(self._heap, (deadline, fragment.timestamp, fragment.label, fragment))
            self._condition.notify()

    def pending(self):
        with self._condition:
            return len(self._heap)

    def stop(self, timeout=None):
        with self._condition:
            self._keep_alive = False
            self._heap.clear()
            self._condition.notify_all()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._state = WatcherState.STOPPED

    def _pop_due(self):
        now = get_current_time(monotonic=True)
        due = []
        while self._heap and self._heap[0][0] <= now:
            due.append(heapq.heappop(self._heap)[-1])
        return due

    def _run(self):
        while True:
            with self._condition:
                while self._keep_alive:
                    now = get_current_time(monotonic=True)
                    if self._heap and self._heap[0][0] <= now:
                        break
                    self._state = WatcherState.IDLE
                    timeout = self._poll_interval
                    if self._heap:
                        timeout = min(timeout, self._heap[0][0] - now)
                    self._condition.wait(timeout)
                if not self._keep_alive:
                    break
                self._state = WatcherState.EVALUATING
                due = self._pop_due()

            for fragment in due:
                try:
                    self._expiry_handler(fragment)
                except Exception as e:
                    _logger.error(f"Error removing aged pointcloud {fragment.label}: {str(e)}")

        self._state = WatcherState.STOPPED
