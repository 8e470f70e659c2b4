"""
broker.py - Simulated network for the traffic control actors.

The broker stands in for the transport layer: actors subscribe under an id and
exchange messages by name.  Delivery is delayed (base latency plus jitter),
best-effort and at-most-once: unknown receivers and failing handlers are logged,
never retried and never raised to the sender.  The broker also keeps the
bounded, structured event log that the rest of the system writes to.
"""

import enum
import logging
import random
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

from . import config

logger = logging.getLogger(__name__)


class LogLevel(enum.Enum):
    DEBUG = 'DEBUG'
    INFO = 'INFO'
    WARN = 'WARN'
    ERROR = 'ERROR'

    @property
    def stdlib_level(self):
        return _STDLIB_LEVELS[self]


_STDLIB_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class LogEntry:
    timestamp: float
    level: LogLevel
    source: str
    message: str
    data: Optional[Any] = None


class Delivery:
    """Pending outcome of a send; resolved once the simulated delay elapses."""

    def __init__(self, message):
        self.message = message
        self.delivered = None
        self._callbacks = []

    @property
    def done(self):
        return self.delivered is not None

    def add_done_callback(self, fn):
        """Call ``fn(delivered)`` when resolved (immediately if already done)."""
        if self.done:
            fn(self.delivered)
        else:
            self._callbacks.append(fn)

    def _resolve(self, delivered):
        self.delivered = delivered
        callbacks, self._callbacks = self._callbacks, []
        for fn in callbacks:
            try:
                fn(delivered)
            except Exception:
                logger.exception(f"Delivery callback failed for message {self.message.id}")

    def __repr__(self):
        return f"<Delivery {self.message.type.name} {self.message.sender_id}->{self.message.receiver_id} delivered={self.delivered}>"


class Broker:
    def __init__(self, scheduler, latency=config.NETWORK_LATENCY, jitter=config.NETWORK_JITTER,
                 log_capacity=config.LOG_CAPACITY, rng=None):
        """
        Initialize the broker.

        Args:
            scheduler (Scheduler): Event scheduler shared by the network.
            latency (float): Base delivery delay in seconds.
            jitter (float): Upper bound of the random delay added per message.
            log_capacity (int): Number of most recent log entries kept.
            rng (random.Random): Random source for jitter (optional).
        """
        self.scheduler = scheduler
        self.latency = latency
        self.jitter = jitter
        self._rng = rng or random.Random()

        self._subscribers = {}  # {actor_id: handler}
        self._message_count = 0
        self._history = deque(maxlen=log_capacity)
        self._channel_clock = {}  # {(sender_id, receiver_id): last scheduled arrival}

        self._logs = deque(maxlen=log_capacity)
        self._log_handlers = []

    # ----------------------------
    # Membership
    # ----------------------------
    def subscribe(self, actor_id, handler):
        """Register ``handler(message)`` to receive messages addressed to ``actor_id``."""
        self._subscribers[actor_id] = handler
        self.log(LogLevel.INFO, 'broker', f"Actor {actor_id} subscribed to message broker")

    def unsubscribe(self, actor_id):
        if self._subscribers.pop(actor_id, None) is not None:
            self.log(LogLevel.INFO, 'broker', f"Actor {actor_id} unsubscribed from message broker")

    def subscribers(self):
        return list(self._subscribers)

    def is_connected(self, actor_id):
        return actor_id in self._subscribers

    # ----------------------------
    # Delivery
    # ----------------------------
    def send(self, message, on_result=None):
        """
        Send a message to its receiver after the simulated network delay.

        Never raises on delivery problems; the returned Delivery resolves to
        False when the receiver is unknown or its handler fails.

        Args:
            message (Message): The envelope to deliver.
            on_result (callable): Optional ``fn(delivered)`` called on resolution.

        Returns:
            Delivery: Pending outcome of the send.
        """
        self._message_count += 1
        self._history.append(message)

        delivery = Delivery(message)
        if on_result is not None:
            delivery.add_done_callback(on_result)

        now = self.scheduler.now()
        arrival = now + self.latency + self._rng.uniform(0, self.jitter)
        channel = (message.sender_id, message.receiver_id)
        # Messages on one channel never overtake each other.
        arrival = max(arrival, self._channel_clock.get(channel, now))
        self._channel_clock[channel] = arrival

        self.scheduler.call_at(arrival, self._deliver, message, delivery,
                               name=f"deliver {message.type.name} to {message.receiver_id}")
        return delivery

    def _deliver(self, message, delivery):
        channel = (message.sender_id, message.receiver_id)
        if self._channel_clock.get(channel, 0) <= self.scheduler.now():
            # Nothing later is queued on this channel.
            self._channel_clock.pop(channel, None)

        handler = self._subscribers.get(message.receiver_id)
        if handler is None:
            self.log(LogLevel.WARN, 'broker',
                     f"Actor {message.receiver_id} not found. Message {message.type.name} dropped.",
                     {'message_id': message.id, 'sender_id': message.sender_id})
            delivery._resolve(False)
            return

        try:
            handler(message)
        except Exception as e:
            self.log(LogLevel.ERROR, 'broker',
                     f"Failed to deliver message to {message.receiver_id}: {e}",
                     {'message_id': message.id, 'type': message.type.name})
            delivery._resolve(False)
            return

        self.log(LogLevel.DEBUG, 'broker',
                 f"Message {message.type.name} delivered: {message.sender_id} -> {message.receiver_id}")
        delivery._resolve(True)

    def broadcast(self, message, exclude_sender=True):
        """
        Send a copy of ``message`` to every current subscriber, one ``send``
        per subscriber, in subscription order.

        Returns:
            list[Delivery]: One pending outcome per recipient.
        """
        deliveries = []
        for actor_id in list(self._subscribers):
            if exclude_sender and actor_id == message.sender_id:
                continue
            deliveries.append(self.send(message.readdressed(actor_id)))
        return deliveries

    def message_count(self):
        """Total number of sends, delivered or not."""
        return self._message_count

    def history(self, limit=None):
        """Most recent messages handed to ``send``, oldest first."""
        items = list(self._history)
        return items[-limit:] if limit else items

    # ----------------------------
    # Event log
    # ----------------------------
    def log(self, level, source, message, data=None):
        entry = LogEntry(
            timestamp=self.scheduler.now(),
            level=level,
            source=source,
            message=message,
            data=data,
        )
        self._logs.append(entry)
        logger.log(level.stdlib_level, f"[{source}] {message}")

        for handler in list(self._log_handlers):
            try:
                handler(entry)
            except Exception:
                logger.exception(f"Log handler {handler!r} failed")

    def on_log(self, handler):
        """
        Subscribe ``handler(entry)`` to log events. Handlers are called
        synchronously, in registration order.

        Returns:
            callable: Unsubscribe handle (safe to call more than once).
        """
        self._log_handlers.append(handler)

        def unsubscribe():
            if handler in self._log_handlers:
                self._log_handlers.remove(handler)

        return unsubscribe

    def logs(self, limit=None):
        items = list(self._logs)
        return items[-limit:] if limit else items

    def clear_logs(self):
        self._logs.clear()

    def reset(self):
        """Drop subscribers, counters, history and logs."""
        self._subscribers.clear()
        self._message_count = 0
        self._history.clear()
        self._channel_clock.clear()
        self._logs.clear()
