"""
message.py - Message format and helpers.

Defines the envelope exchanged through the broker, the closed set of message
types and the typed payload carried by each one.  A message's payload class is
fixed by its type, so handlers can rely on the payload shape without checks.
"""

from __future__ import annotations

import dataclasses
import enum
import itertools
import json
from dataclasses import dataclass
from typing import Optional, Union

from . import config


class MessageType(enum.Enum):
    REGISTER = 'REGISTER'
    UNREGISTER = 'UNREGISTER'
    HEARTBEAT = 'HEARTBEAT'
    METRICS_REPORT = 'METRICS_REPORT'
    TIMING_ADJUSTMENT = 'TIMING_ADJUSTMENT'
    DISCOVERY_REQUEST = 'DISCOVERY_REQUEST'
    DISCOVERY_RESPONSE = 'DISCOVERY_RESPONSE'
    ACK = 'ACK'
    NACK = 'NACK'


class LightState(enum.Enum):
    GREEN = 'GREEN'
    YELLOW = 'YELLOW'
    RED = 'RED'

    def next(self) -> LightState:
        """Successor in the GREEN -> YELLOW -> RED -> GREEN cycle."""
        return _LIGHT_CYCLE[self]


_LIGHT_CYCLE = {
    LightState.GREEN: LightState.YELLOW,
    LightState.YELLOW: LightState.RED,
    LightState.RED: LightState.GREEN,
}


class CongestionLevel(enum.IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class NodeStatus(enum.Enum):
    ONLINE = 'ONLINE'
    OFFLINE = 'OFFLINE'
    REGISTERING = 'REGISTERING'


@dataclass(frozen=True)
class TrafficTiming:
    green: float
    yellow: float
    red: float

    def __post_init__(self):
        for name in ('green', 'yellow', 'red'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} duration must be positive, got {getattr(self, name)}")

    def duration_for(self, state: LightState) -> float:
        if state is LightState.GREEN:
            return self.green
        if state is LightState.YELLOW:
            return self.yellow
        return self.red


DEFAULT_TIMING = TrafficTiming(
    green=config.DEFAULT_GREEN_DURATION,
    yellow=config.DEFAULT_YELLOW_DURATION,
    red=config.DEFAULT_RED_DURATION,
)


@dataclass(frozen=True)
class CameraMetrics:
    vehicle_count: int
    average_wait_time: float
    congestion_level: CongestionLevel
    queue_length: int
    timestamp: float

    def __post_init__(self):
        if self.vehicle_count < 0:
            raise ValueError(f"vehicle_count must be non-negative, got {self.vehicle_count}")
        if self.average_wait_time < 0:
            raise ValueError(f"average_wait_time must be non-negative, got {self.average_wait_time}")
        if not 0 <= self.queue_length <= self.vehicle_count:
            raise ValueError(
                f"queue_length must be between 0 and vehicle_count ({self.vehicle_count}), "
                f"got {self.queue_length}"
            )


# ----------------------------
# Payloads, one per message type
# ----------------------------
@dataclass(frozen=True)
class RegisterPayload:
    node_id: str
    name: str
    intersection: str


@dataclass(frozen=True)
class UnregisterPayload:
    node_id: str


@dataclass(frozen=True)
class HeartbeatPayload:
    node_id: str


@dataclass(frozen=True)
class MetricsReportPayload:
    node_id: str
    metrics: CameraMetrics
    current_state: LightState
    current_timing: TrafficTiming


@dataclass(frozen=True)
class TimingAdjustmentPayload:
    node_id: str
    new_timing: TrafficTiming
    reason: str


@dataclass(frozen=True)
class DiscoveryRequestPayload:
    pass


@dataclass(frozen=True)
class NodeSummary:
    node_id: str
    name: str
    intersection: str
    status: NodeStatus


@dataclass(frozen=True)
class DiscoveryResponsePayload:
    nodes: tuple = ()


ACK_REGISTERED = 'REGISTERED'
NACK_UNKNOWN_NODE = 'UNKNOWN_NODE'
NACK_UNSUPPORTED = 'UNSUPPORTED'


@dataclass(frozen=True)
class AckPayload:
    original_message_id: str
    status: str


@dataclass(frozen=True)
class NackPayload:
    original_message_id: str
    reason: str


Payload = Union[
    RegisterPayload,
    UnregisterPayload,
    HeartbeatPayload,
    MetricsReportPayload,
    TimingAdjustmentPayload,
    DiscoveryRequestPayload,
    DiscoveryResponsePayload,
    AckPayload,
    NackPayload,
]

PAYLOAD_TYPES = {
    MessageType.REGISTER: RegisterPayload,
    MessageType.UNREGISTER: UnregisterPayload,
    MessageType.HEARTBEAT: HeartbeatPayload,
    MessageType.METRICS_REPORT: MetricsReportPayload,
    MessageType.TIMING_ADJUSTMENT: TimingAdjustmentPayload,
    MessageType.DISCOVERY_REQUEST: DiscoveryRequestPayload,
    MessageType.DISCOVERY_RESPONSE: DiscoveryResponsePayload,
    MessageType.ACK: AckPayload,
    MessageType.NACK: NackPayload,
}

_message_ids = itertools.count(1)


def next_message_id() -> str:
    """Process-wide unique message id."""
    return f"msg_{next(_message_ids)}"


@dataclass(frozen=True)
class Message:
    id: str
    type: MessageType
    sender_id: str
    receiver_id: str
    timestamp: float
    payload: Payload

    def readdressed(self, receiver_id: str) -> Message:
        """Copy of this message for another receiver, with a fresh id."""
        return dataclasses.replace(self, id=next_message_id(), receiver_id=receiver_id)


def create_message(msg_type, sender_id, receiver_id, payload, timestamp):
    """
    Create a message envelope.

    Args:
        msg_type (MessageType): Type of the message.
        sender_id (str): Id of the sending actor.
        receiver_id (str): Id of the receiving actor.
        payload: Payload instance matching ``msg_type``.
        timestamp (float): Creation time on the scheduler clock.

    Returns:
        Message: The immutable envelope.

    Raises:
        TypeError: If the payload class does not belong to ``msg_type``.
    """
    expected = PAYLOAD_TYPES[msg_type]
    if not isinstance(payload, expected):
        raise TypeError(
            f"{msg_type.name} message requires {expected.__name__}, got {type(payload).__name__}"
        )
    return Message(
        id=next_message_id(),
        type=msg_type,
        sender_id=sender_id,
        receiver_id=receiver_id,
        timestamp=timestamp,
        payload=payload,
    )


def to_dict(value):
    """Convert envelopes, payloads and snapshots into JSON-ready data."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_dict(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, enum.Enum):
        return value.name
    if isinstance(value, (list, tuple)):
        return [to_dict(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_dict(v) for k, v in value.items()}
    return value


def serialize(value) -> bytes:
    """Convert a message (or any dataclass tree) to JSON bytes."""
    return json.dumps(to_dict(value)).encode('utf-8')


def deserialize(data: bytes) -> Optional[dict]:
    """Convert JSON bytes back to a plain dict."""
    try:
        return json.loads(data.decode('utf-8'))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
