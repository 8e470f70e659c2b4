"""
network.py - Lifecycle manager for one simulated traffic control network.

A TrafficNetwork owns exactly one broker, registry and coordinator, plus the
traffic light nodes added to it.  It is the driver-facing surface: start/stop
the network, add and remove nodes, toggle rush hour and take snapshots for a
presentation layer.
"""

import logging
import random
from dataclasses import dataclass
from typing import Optional

from . import config
from .broker import Broker, LogLevel
from .coordinator import Coordinator
from .message import DEFAULT_TIMING, CameraMetrics, LightState, NodeStatus, TrafficTiming
from .node import TrafficLightNode
from .registry import Registry
from .scheduler import Scheduler
from .sensor import TrafficSensor

logger = logging.getLogger(__name__)


class NetworkNotRunningError(RuntimeError):
    pass


@dataclass(frozen=True)
class NodeView:
    node_id: str
    name: str
    intersection: str
    status: NodeStatus
    state: LightState
    timing: TrafficTiming
    last_metrics: Optional[CameraMetrics]
    registered_at: Optional[float]
    last_heartbeat: Optional[float]


@dataclass(frozen=True)
class NetworkSnapshot:
    registry_online: bool
    coordinator_online: bool
    nodes: tuple
    total_messages: int
    recent_logs: tuple
    running: bool
    rush_hour_active: bool


class TrafficNetwork:
    def __init__(self, scheduler=None, seed=None,
                 latency=config.NETWORK_LATENCY, jitter=config.NETWORK_JITTER,
                 heartbeat_timeout=config.HEARTBEAT_TIMEOUT,
                 sweep_interval=config.LIVENESS_SWEEP_INTERVAL,
                 global_pass_interval=config.GLOBAL_PASS_INTERVAL,
                 heartbeat_interval=config.HEARTBEAT_INTERVAL,
                 metrics_interval=config.METRICS_INTERVAL):
        """
        Build the broker, registry and coordinator of a new network.

        Args:
            scheduler (Scheduler): Shared event scheduler (a new one if omitted).
            seed (int): Seed for every random source in the network, for
                reproducible runs.
        """
        self.scheduler = scheduler or Scheduler()
        self._rng = random.Random(seed)

        self.broker = Broker(self.scheduler, latency=latency, jitter=jitter,
                             rng=random.Random(self._rng.random()))
        self.registry = Registry(self.broker, self.scheduler, heartbeat_timeout=heartbeat_timeout,
                                 sweep_interval=sweep_interval)
        self.coordinator = Coordinator(self.broker, self.scheduler,
                                       global_pass_interval=global_pass_interval)
        self.heartbeat_interval = heartbeat_interval
        self.metrics_interval = metrics_interval

        self._nodes = {}  # {node_id: TrafficLightNode}
        self._running = False
        self._rush_hour = False
        self._listeners = []
        self._notifying = False
        self._log_unsubscribe = None

    @property
    def running(self):
        return self._running

    @property
    def rush_hour_active(self):
        return self._rush_hour

    # ----------------------------
    # Lifecycle
    # ----------------------------
    def start(self):
        if self._running:
            self._log(LogLevel.WARN, "Network already running")
            return

        self._log(LogLevel.INFO, "=== STARTING TRAFFIC NETWORK ===")
        self.registry.start()
        self.coordinator.start()
        self._log_unsubscribe = self.broker.on_log(lambda entry: self._notify())
        self._running = True

        self._log(LogLevel.INFO, "Traffic network started - Ready to add nodes")
        self._notify()

    def stop(self):
        if not self._running:
            self._log(LogLevel.WARN, "Network already stopped")
            return

        self._log(LogLevel.INFO, "=== STOPPING TRAFFIC NETWORK ===")
        unregistrations = [node.stop() for node in list(self._nodes.values())]
        self._nodes.clear()
        # The registry must still be listening when the unregistrations land.
        self._drain(unregistrations)

        self.coordinator.stop()
        self.registry.stop()

        if self._log_unsubscribe is not None:
            self._log_unsubscribe()
            self._log_unsubscribe = None
        self._running = False

        self._log(LogLevel.INFO, "Traffic network stopped")
        self._notify()

    def _drain(self, deliveries):
        pending = [d for d in deliveries if d is not None]
        while any(not d.done for d in pending):
            if not self.scheduler.step():
                break

    def reset(self):
        """Stop everything and forget all state, logs and counters included."""
        if self._running:
            self.stop()
        self.registry.reset()
        self.coordinator.reset()
        self.broker.reset()
        self._nodes.clear()
        self._rush_hour = False

    # ----------------------------
    # Membership
    # ----------------------------
    def add_node(self, name, intersection):
        """
        Create, start and return a traffic light node.

        Raises:
            NetworkNotRunningError: If the network has not been started.
        """
        if not self._running:
            raise NetworkNotRunningError("Network must be running to add nodes")

        node = TrafficLightNode(
            self.broker,
            self.scheduler,
            name,
            intersection,
            node_id=f"node_{self._rng.getrandbits(32):08x}",
            sensor=TrafficSensor(rng=random.Random(self._rng.random())),
            heartbeat_interval=self.heartbeat_interval,
            metrics_interval=self.metrics_interval,
        )
        self._nodes[node.node_id] = node
        node.start()

        if self._rush_hour:
            node.set_rush_hour(True)

        self._notify()
        return node

    def add_presets(self, count):
        """Add the first ``count`` preset intersections."""
        return [self.add_node(name, intersection)
                for name, intersection in config.INTERSECTION_PRESETS[:count]]

    def remove_node(self, node_id):
        node = self._nodes.pop(node_id, None)
        if node is None:
            self._log(LogLevel.WARN, f"Cannot remove unknown node {node_id}")
            return False

        node.stop()
        self._log(LogLevel.INFO, f"Node {node.name} removed from the network")
        self._notify()
        return True

    def nodes(self):
        return list(self._nodes.values())

    def node(self, node_id):
        return self._nodes.get(node_id)

    def set_rush_hour(self, enabled):
        self._rush_hour = enabled
        for node in self._nodes.values():
            node.set_rush_hour(enabled)

        self._log(LogLevel.INFO, f"=== RUSH HOUR MODE: {'ON' if enabled else 'OFF'} ===")
        self._notify()

    def run_for(self, duration, realtime=False):
        """Advance the network's clock by ``duration`` seconds."""
        self.scheduler.run_for(duration, realtime=realtime)

    # ----------------------------
    # Observation
    # ----------------------------
    def snapshot(self):
        views = []
        seen = set()
        for record in self.registry.records():
            node = self._nodes.get(record.node_id)
            info = node.info() if node else None
            views.append(NodeView(
                node_id=record.node_id,
                name=record.name,
                intersection=record.intersection,
                status=record.status,
                state=info.state if info else LightState.RED,
                timing=info.timing if info else self._coordinator_timing(record.node_id),
                last_metrics=info.last_metrics if info else None,
                registered_at=record.registered_at,
                last_heartbeat=record.last_heartbeat,
            ))
            seen.add(record.node_id)

        # Live nodes whose registration is still in flight.
        for node in self._nodes.values():
            if node.node_id in seen:
                continue
            info = node.info()
            views.append(NodeView(
                node_id=info.node_id,
                name=info.name,
                intersection=info.intersection,
                status=NodeStatus.REGISTERING,
                state=info.state,
                timing=info.timing,
                last_metrics=info.last_metrics,
                registered_at=None,
                last_heartbeat=None,
            ))

        return NetworkSnapshot(
            registry_online=self.registry.online,
            coordinator_online=self.coordinator.online,
            nodes=tuple(views),
            total_messages=self.broker.message_count(),
            recent_logs=tuple(self.broker.logs(config.SNAPSHOT_LOG_LIMIT)),
            running=self._running,
            rush_hour_active=self._rush_hour,
        )

    def _coordinator_timing(self, node_id):
        state = self.coordinator.node_state(node_id)
        return state.current_timing if state else DEFAULT_TIMING

    def on_state_change(self, listener):
        """
        Register ``listener(snapshot)``, notified after every mutating operation
        and every log event while the network runs.

        Returns:
            callable: Unsubscribe handle.
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self):
        # Listeners may log, which would notify again.
        if self._notifying or not self._listeners:
            return
        self._notifying = True
        try:
            snapshot = self.snapshot()
            for listener in list(self._listeners):
                try:
                    listener(snapshot)
                except Exception:
                    logger.exception("State change listener failed")
        finally:
            self._notifying = False

    def _log(self, level, text, data=None):
        self.broker.log(level, config.ORCHESTRATOR_ID, text, data)
