"""
coordinator.py - Central traffic coordination.

Consumes the metrics reported by the edge nodes and pushes timing adjustments
back to them.  The per-node decision only looks at that node's report and its
last known timing; a separate periodic pass summarizes the whole network for
observability and never changes anything.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional

from . import config
from . import message
from .broker import LogLevel
from .message import DEFAULT_TIMING, CameraMetrics, CongestionLevel, LightState, MessageType, TrafficTiming

logger = logging.getLogger(__name__)

# congestion level -> (green adjustment, red adjustment), seconds
CONGESTION_ADJUSTMENTS = {
    CongestionLevel.CRITICAL: (15, -10),
    CongestionLevel.HIGH: (10, -5),
    CongestionLevel.MEDIUM: (5, 0),
    CongestionLevel.LOW: (-5, 5),
}


@dataclass
class NodeState:
    node_id: str
    last_metrics: Optional[CameraMetrics]
    current_timing: TrafficTiming
    current_state: LightState
    last_update: float


@dataclass(frozen=True)
class GlobalStatus:
    node_count: int
    total_vehicles: int
    average_congestion: Optional[CongestionLevel]


def _clamp(value, low, high):
    return min(high, max(low, value))


def calculate_timing(metrics: CameraMetrics, timing: TrafficTiming) -> TrafficTiming:
    """
    Candidate timing for a node given its latest metrics and its current timing.

    The congestion level sets the base green/red adjustment, the average wait
    time corrects green further, and both results are clamped to the allowed
    bounds. Yellow is carried over unchanged.
    """
    green_adjustment, red_adjustment = CONGESTION_ADJUSTMENTS[metrics.congestion_level]

    if metrics.average_wait_time > config.LONG_WAIT_THRESHOLD:
        green_adjustment += config.WAIT_TIME_CORRECTION
    elif metrics.average_wait_time < config.SHORT_WAIT_THRESHOLD:
        green_adjustment -= config.WAIT_TIME_CORRECTION

    return TrafficTiming(
        green=_clamp(timing.green + green_adjustment, config.MIN_GREEN, config.MAX_GREEN),
        yellow=timing.yellow,
        red=_clamp(timing.red + red_adjustment, config.MIN_RED, config.MAX_RED),
    )


def should_adjust(current: TrafficTiming, proposed: TrafficTiming,
                  threshold=config.ADJUSTMENT_THRESHOLD) -> bool:
    """True when green or red moves by more than ``threshold`` seconds."""
    return (abs(current.green - proposed.green) > threshold
            or abs(current.red - proposed.red) > threshold)


def average_congestion(levels) -> Optional[CongestionLevel]:
    """Mean congestion level, rounded back to a label at the midpoints."""
    levels = list(levels)
    if not levels:
        return None

    avg = sum(level.value for level in levels) / len(levels)
    if avg <= 1.5:
        return CongestionLevel.LOW
    if avg <= 2.5:
        return CongestionLevel.MEDIUM
    if avg <= 3.5:
        return CongestionLevel.HIGH
    return CongestionLevel.CRITICAL


class Coordinator:
    def __init__(self, broker, scheduler, global_pass_interval=config.GLOBAL_PASS_INTERVAL,
                 coordinator_id=config.COORDINATOR_ID):
        self.broker = broker
        self.scheduler = scheduler
        self.coordinator_id = coordinator_id
        self.global_pass_interval = global_pass_interval

        # Entries are never pruned when a node leaves; see DESIGN.md.
        self._node_states = {}  # {node_id: NodeState}
        self._running = False
        self._global_task = None
        self.adjustments_sent = 0

        self._handlers = {
            MessageType.METRICS_REPORT: self._handle_metrics_report,
            MessageType.REGISTER: self._handle_register,
        }

    @property
    def online(self):
        return self._running

    def start(self):
        if self._running:
            self._log(LogLevel.WARN, "Coordinator already running")
            return

        self._running = True
        self.broker.subscribe(self.coordinator_id, self._handle_message)
        self._global_task = self.scheduler.call_every(self.global_pass_interval, self._scheduled_pass,
                                                      name='coordinator global pass')
        self._log(LogLevel.INFO, "Coordinator started - Ready to coordinate traffic")

    def stop(self):
        if not self._running:
            self._log(LogLevel.WARN, "Coordinator already stopped")
            return

        self._running = False
        self.broker.unsubscribe(self.coordinator_id)
        if self._global_task is not None:
            self._global_task.cancel()
            self._global_task = None
        self._log(LogLevel.INFO, "Coordinator stopped")

    def reset(self):
        if self._running:
            self.stop()
        self._node_states.clear()
        self.adjustments_sent = 0

    def node_states(self):
        """Copies of the per-node coordination state."""
        return {node_id: dataclasses.replace(s) for node_id, s in self._node_states.items()}

    def node_state(self, node_id):
        s = self._node_states.get(node_id)
        return dataclasses.replace(s) if s else None

    # ----------------------------
    # Message handling
    # ----------------------------
    def _handle_message(self, msg):
        handler = self._handlers.get(msg.type)
        if handler is not None:
            handler(msg)

    def _handle_register(self, msg):
        self._ensure_state(msg.sender_id)

    def _ensure_state(self, node_id):
        state = self._node_states.get(node_id)
        if state is None:
            state = NodeState(
                node_id=node_id,
                last_metrics=None,
                current_timing=DEFAULT_TIMING,
                current_state=LightState.RED,
                last_update=self.scheduler.now(),
            )
            self._node_states[node_id] = state
        return state

    def _handle_metrics_report(self, msg):
        payload = msg.payload
        state = self._ensure_state(payload.node_id)

        state.last_metrics = payload.metrics
        state.current_timing = payload.current_timing
        state.current_state = payload.current_state
        state.last_update = self.scheduler.now()

        metrics = payload.metrics
        self._log(
            LogLevel.DEBUG,
            f"Metrics received from {payload.node_id}: {metrics.vehicle_count} vehicles, "
            f"congestion: {metrics.congestion_level.name}",
            metrics,
        )

        candidate = calculate_timing(metrics, state.current_timing)
        if should_adjust(state.current_timing, candidate):
            self._send_adjustment(payload.node_id, candidate, metrics.congestion_level)

    def _send_adjustment(self, node_id, timing, level):
        payload = message.TimingAdjustmentPayload(
            node_id=node_id,
            new_timing=timing,
            reason=f"Adjustment for {level.name} congestion",
        )
        msg = message.create_message(MessageType.TIMING_ADJUSTMENT, self.coordinator_id, node_id,
                                     payload, self.scheduler.now())
        self.adjustments_sent += 1

        def sent(delivered):
            if delivered:
                self._log(
                    LogLevel.INFO,
                    f"Timing adjustment sent to {node_id}: GREEN={timing.green}s, "
                    f"RED={timing.red}s ({level.name})",
                    payload,
                )

        self.broker.send(msg, on_result=sent)

    # ----------------------------
    # Global pass
    # ----------------------------
    def _scheduled_pass(self):
        if not self._running:
            return
        self.run_global_pass()

    def global_status(self):
        states = list(self._node_states.values())
        total_vehicles = sum(s.last_metrics.vehicle_count for s in states if s.last_metrics)
        avg = average_congestion(s.last_metrics.congestion_level for s in states if s.last_metrics)
        return GlobalStatus(node_count=len(states), total_vehicles=total_vehicles,
                            average_congestion=avg)

    def run_global_pass(self):
        """Summarize all known nodes and log it. Has no other effect."""
        status = self.global_status()
        if status.total_vehicles > 0:
            avg = status.average_congestion.name if status.average_congestion else 'N/A'
            self._log(
                LogLevel.DEBUG,
                f"Global status: {status.node_count} nodes, {status.total_vehicles} total vehicles, "
                f"avg congestion: {avg}",
                status,
            )
        else:
            logger.debug(f"Global pass: {status.node_count} nodes, no traffic reported")
        return status

    def _log(self, level, text, data=None):
        self.broker.log(level, self.coordinator_id, text, data)
