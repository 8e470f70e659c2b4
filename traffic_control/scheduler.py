"""
scheduler.py - Cooperative event scheduler for the simulated network.

All actors share one scheduler per network.  Timers, periodic activities and
delayed message deliveries are events on a single queue ordered by
(time, insertion order); each callback runs to completion before the next one.
Time is virtual: it only moves when the scheduler is driven, optionally paced
against the wall clock for interactive runs.
"""

import heapq
import itertools
import logging
import threading
import time

logger = logging.getLogger(__name__)


class Task:
    """Handle for a scheduled (one-shot or periodic) callback."""

    def __init__(self, scheduler, callback, args, interval=None, name=None):
        self._scheduler = scheduler
        self._callback = callback
        self._args = args
        self.interval = interval
        self.name = name or getattr(callback, '__qualname__', repr(callback))
        self._cancelled = False
        self.runs = 0

    @property
    def cancelled(self):
        return self._cancelled

    @property
    def periodic(self):
        return self.interval is not None

    def cancel(self):
        """Cancel the task. Safe to call any number of times."""
        self._cancelled = True

    def _run(self):
        # Checked again here: the task may have been cancelled after it was
        # popped but before it fired.
        if self._cancelled:
            return
        self.runs += 1
        try:
            self._callback(*self._args)
        except Exception:
            logger.exception(f"Scheduled task {self.name} failed")
        if self.periodic and not self._cancelled:
            self._scheduler._push(self._scheduler.now() + self.interval, self)

    def __repr__(self):
        state = 'cancelled' if self._cancelled else 'active'
        return f"<Task {self.name} {state} runs={self.runs}>"


class Scheduler:
    def __init__(self, start_time=0.0):
        """
        Initialize the scheduler.

        Args:
            start_time (float): Initial value of the virtual clock, in seconds.
        """
        self._now = float(start_time)
        self._queue = []  # heap of (time, seq, task)
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def now(self):
        """Current virtual time in seconds."""
        return self._now

    def call_later(self, delay, callback, *args, name=None):
        """Run ``callback(*args)`` once after ``delay`` seconds."""
        if delay < 0:
            raise ValueError(f"delay must be non-negative, got {delay}")
        task = Task(self, callback, args, name=name)
        self._push(self._now + delay, task)
        return task

    def call_at(self, when, callback, *args, name=None):
        """Run ``callback(*args)`` once at absolute virtual time ``when``."""
        task = Task(self, callback, args, name=name)
        self._push(max(when, self._now), task)
        return task

    def call_every(self, interval, callback, *args, first_delay=None, name=None):
        """Run ``callback(*args)`` every ``interval`` seconds until cancelled."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        task = Task(self, callback, args, interval=interval, name=name)
        delay = interval if first_delay is None else first_delay
        self._push(self._now + delay, task)
        return task

    def _push(self, when, task):
        with self._lock:
            heapq.heappush(self._queue, (when, next(self._seq), task))

    def pending(self):
        """Number of live (not cancelled) entries in the queue."""
        with self._lock:
            return sum(1 for _, _, task in self._queue if not task.cancelled)

    def next_time(self):
        """Time of the next live event, or None if nothing is scheduled."""
        with self._lock:
            self._drop_cancelled()
            return self._queue[0][0] if self._queue else None

    def _drop_cancelled(self):
        while self._queue and self._queue[0][2].cancelled:
            heapq.heappop(self._queue)

    def step(self):
        """Run the next live event. Returns False when the queue is empty."""
        with self._lock:
            self._drop_cancelled()
            if not self._queue:
                return False
            when, _, task = heapq.heappop(self._queue)
        self._now = max(self._now, when)
        task._run()
        return True

    def run_until(self, until_time, realtime=False):
        """
        Run every event scheduled at or before ``until_time``, then move the
        clock to ``until_time``.

        Args:
            until_time (float): Virtual time to stop at.
            realtime (bool): Sleep on the wall clock between events so that one
                virtual second lasts one real second.
        """
        wall_start = time.monotonic()
        sim_start = self._now
        while True:
            when = self.next_time()
            if when is None or when > until_time:
                break
            if realtime:
                self._sleep_until(wall_start, sim_start, when)
            self.step()
        if realtime:
            self._sleep_until(wall_start, sim_start, until_time)
        self._now = max(self._now, until_time)

    def run_for(self, duration, realtime=False):
        """Advance the clock by ``duration`` seconds, running due events."""
        self.run_until(self._now + duration, realtime=realtime)

    def run_until_idle(self, max_events=100000):
        """
        Run events until the queue is empty. Periodic tasks keep the queue
        busy forever, so ``max_events`` bounds the run.

        Returns:
            int: Number of events executed.
        """
        count = 0
        while count < max_events and self.step():
            count += 1
        return count

    @staticmethod
    def _sleep_until(wall_start, sim_start, sim_time):
        delay = (sim_time - sim_start) - (time.monotonic() - wall_start)
        if delay > 0:
            time.sleep(delay)
