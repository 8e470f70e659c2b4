import dataclasses
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from . import config
from . import message
from .broker import LogLevel
from .message import DEFAULT_TIMING, CameraMetrics, LightState, MessageType, TrafficTiming
from .sensor import TrafficSensor

logger = logging.getLogger(__name__)


def generate_node_id():
    return f"node_{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class NodeInfo:
    node_id: str
    name: str
    intersection: str
    state: LightState
    timing: TrafficTiming
    last_metrics: Optional[CameraMetrics]
    running: bool


class TrafficLightNode:
    def __init__(self, broker, scheduler, name, intersection, node_id=None, sensor=None, timing=None,
                 heartbeat_interval=config.HEARTBEAT_INTERVAL, metrics_interval=config.METRICS_INTERVAL,
                 registry_id=config.REGISTRY_ID, coordinator_id=config.COORDINATOR_ID):
        """
        Initialize the traffic light node and its local sensor.
        """
        self.broker = broker
        self.scheduler = scheduler
        self.name = name
        self.intersection = intersection
        self.node_id = node_id or generate_node_id()
        self.sensor = sensor or TrafficSensor()
        self.registry_id = registry_id
        self.coordinator_id = coordinator_id
        self.heartbeat_interval = heartbeat_interval
        self.metrics_interval = metrics_interval

        # Traffic light phase for this node (start at RED)
        self._state = LightState.RED
        self._timing = timing or DEFAULT_TIMING
        self._state_entered_at = None
        self._last_metrics = None
        self._known_peers = ()

        # Internal state flags
        self._running = False
        self._heartbeat_task = None
        self._metrics_task = None
        self._state_task = None

        self._state_listeners = []

        self._handlers = {
            MessageType.TIMING_ADJUSTMENT: self._handle_timing_adjustment,
            MessageType.ACK: self._handle_ack,
            MessageType.NACK: self._handle_nack,
            MessageType.DISCOVERY_RESPONSE: self._handle_discovery_response,
        }

    # ----------------------------
    # Lifecycle
    # ----------------------------
    def start(self):
        """
        Join the network: subscribe, register with the registry and the
        coordinator, then start heartbeats, metrics reporting and the light cycle.
        """
        if self._running:
            self._log(LogLevel.WARN, f"Node {self.name} already running")
            return
        self._running = True

        self.broker.subscribe(self.node_id, self._handle_message)
        self._register(self.registry_id)
        self._register(self.coordinator_id)

        self._heartbeat_task = self.scheduler.call_every(
            self.heartbeat_interval, self._send_heartbeat, name=f"{self.node_id} heartbeat")
        self._metrics_task = self.scheduler.call_every(
            self.metrics_interval, self._scheduled_metrics, name=f"{self.node_id} metrics")
        self._enter_state(self._state)

        self._log(LogLevel.INFO,
                  f"Node {self.name} started at intersection {self.intersection} - State: {self._state.name}")

    def stop(self):
        """
        Leave the network. The running flag drops first so callbacks that are
        already due do nothing.

        Returns:
            Delivery: The pending UNREGISTER send, or None if already stopped.
        """
        if not self._running:
            self._log(LogLevel.WARN, f"Node {self.name} already stopped")
            return None
        self._running = False

        unregistration = self._send(MessageType.UNREGISTER, self.registry_id,
                                    message.UnregisterPayload(self.node_id))

        for task in (self._state_task, self._metrics_task, self._heartbeat_task):
            if task is not None:
                task.cancel()
        self._state_task = self._metrics_task = self._heartbeat_task = None

        self.broker.unsubscribe(self.node_id)
        self._log(LogLevel.INFO, f"Node {self.name} stopped - Disconnected from the network")
        return unregistration

    # ----------------------------
    # Outgoing messages
    # ----------------------------
    def _send(self, msg_type, receiver_id, payload):
        msg = message.create_message(msg_type, self.node_id, receiver_id, payload, self.scheduler.now())
        return self.broker.send(msg)

    def _register(self, receiver_id):
        payload = message.RegisterPayload(self.node_id, self.name, self.intersection)
        self._send(MessageType.REGISTER, receiver_id, payload)

    def _send_heartbeat(self):
        if not self._running:
            return
        self._send(MessageType.HEARTBEAT, self.registry_id, message.HeartbeatPayload(self.node_id))

    def _scheduled_metrics(self):
        if not self._running:
            return
        self.report_metrics()

    def report_metrics(self, metrics=None):
        """
        Capture metrics from the local sensor (or use ``metrics``) and report
        them to the coordinator.

        Returns:
            CameraMetrics: The reported metrics, or None if the node is stopped.
        """
        if not self._running:
            self._log(LogLevel.WARN, f"Node {self.name} is not running; metrics not reported")
            return None

        if metrics is None:
            metrics = self.sensor.capture(self.scheduler.now())
        self._last_metrics = metrics

        payload = message.MetricsReportPayload(
            node_id=self.node_id,
            metrics=metrics,
            current_state=self._state,
            current_timing=self._timing,
        )
        self._send(MessageType.METRICS_REPORT, self.coordinator_id, payload)

        self._log(LogLevel.DEBUG,
                  f"[{self.name}] Metrics sent: {metrics.vehicle_count} vehicles, "
                  f"congestion: {metrics.congestion_level.name}, state: {self._state.name}")
        return metrics

    def request_discovery(self):
        """Ask the registry for the current membership."""
        if not self._running:
            return None
        return self._send(MessageType.DISCOVERY_REQUEST, self.registry_id, message.DiscoveryRequestPayload())

    # ----------------------------
    # Light cycle
    # ----------------------------
    def _enter_state(self, state):
        # The duration is fixed here; later timing changes apply on the next entry.
        self._state = state
        self._state_entered_at = self.scheduler.now()
        duration = self._timing.duration_for(state)
        self._state_task = self.scheduler.call_later(duration, self._advance,
                                                     name=f"{self.node_id} light cycle")
        return duration

    def _advance(self):
        if not self._running:
            return

        previous = self._state
        new_state = previous.next()
        duration = self._enter_state(new_state)

        self._log(LogLevel.INFO,
                  f"[{self.name}] State change: {previous.name} -> {new_state.name} (Duration {duration}s)")

        for listener in list(self._state_listeners):
            try:
                listener(self, previous, new_state)
            except Exception:
                logger.exception(f"Node {self.name}: state listener failed")

    def on_state_change(self, listener):
        """
        Register ``listener(node, previous, new)``, called synchronously on
        every light transition.

        Returns:
            callable: Unsubscribe handle.
        """
        self._state_listeners.append(listener)

        def unsubscribe():
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return unsubscribe

    # ----------------------------
    # Incoming messages
    # ----------------------------
    def _handle_message(self, msg):
        handler = self._handlers.get(msg.type)
        if handler is not None:
            handler(msg)

    def _handle_timing_adjustment(self, msg):
        payload = msg.payload
        old_timing = self._timing
        self._timing = payload.new_timing

        self._log(
            LogLevel.INFO,
            f"[{self.name}] Timing adjusted by coordinator: GREEN={old_timing.green}s->{payload.new_timing.green}s, "
            f"RED={old_timing.red}s->{payload.new_timing.red}s ({payload.reason})",
            {'old_timing': old_timing, 'new_timing': payload.new_timing},
        )

    def _handle_ack(self, msg):
        self._log(LogLevel.DEBUG, f"[{self.name}] Registration confirmed by {msg.sender_id}")

    def _handle_nack(self, msg):
        if msg.sender_id == self.registry_id and msg.payload.reason == message.NACK_UNKNOWN_NODE:
            self._log(LogLevel.WARN, f"[{self.name}] Unknown to the registry, registering again")
            self._register(self.registry_id)
        else:
            self._log(LogLevel.DEBUG, f"[{self.name}] NACK from {msg.sender_id}: {msg.payload.reason}")

    def _handle_discovery_response(self, msg):
        self._known_peers = tuple(n for n in msg.payload.nodes if n.node_id != self.node_id)
        self._log(LogLevel.DEBUG, f"[{self.name}] Discovered {len(self._known_peers)} peer(s)")

    # ----------------------------
    # Local controls and accessors
    # ----------------------------
    def set_rush_hour(self, enabled, multiplier=None):
        if multiplier is None:
            self.sensor.set_rush_hour(enabled)
        else:
            self.sensor.set_rush_hour(enabled, multiplier)
        self._log(LogLevel.INFO, f"[{self.name}] Rush hour mode: {'ON' if enabled else 'OFF'}")

    def set_base_traffic(self, level):
        self.sensor.set_base_traffic(level)

    @property
    def state(self):
        return self._state

    @property
    def timing(self):
        """A copy of the current timing."""
        return dataclasses.replace(self._timing)

    @property
    def last_metrics(self):
        return self._last_metrics

    @property
    def running(self):
        return self._running

    @property
    def state_entered_at(self):
        return self._state_entered_at

    @property
    def known_peers(self):
        return self._known_peers

    def info(self):
        return NodeInfo(
            node_id=self.node_id,
            name=self.name,
            intersection=self.intersection,
            state=self._state,
            timing=self.timing,
            last_metrics=self._last_metrics,
            running=self._running,
        )

    def _log(self, level, text, data=None):
        self.broker.log(level, self.node_id, text, data)

    def __repr__(self):
        return f"<TrafficLightNode {self.name} ({self.node_id}) state={self._state.name} running={self._running}>"
