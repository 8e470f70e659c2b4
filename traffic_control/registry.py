"""
registry.py - Service discovery and failure detection for traffic nodes.

The registry is the membership authority of the network.  Nodes register and
send heartbeats through the broker; a periodic liveness sweep marks nodes whose
heartbeats stopped as OFFLINE, and the next heartbeat brings them back ONLINE.
"""

import dataclasses
import logging
from dataclasses import dataclass

from . import config
from . import message
from .broker import LogLevel
from .message import MessageType, NodeStatus

logger = logging.getLogger(__name__)


@dataclass
class NodeRecord:
    node_id: str
    name: str
    intersection: str
    status: NodeStatus
    registered_at: float
    last_heartbeat: float


class Registry:
    def __init__(self, broker, scheduler, heartbeat_timeout=config.HEARTBEAT_TIMEOUT,
                 sweep_interval=config.LIVENESS_SWEEP_INTERVAL, registry_id=config.REGISTRY_ID):
        """
        Initialize the registry.

        Args:
            broker (Broker): Simulated network to listen on.
            scheduler (Scheduler): Clock and timer source.
            heartbeat_timeout (float): Heartbeat age after which a node is OFFLINE.
            sweep_interval (float): Period of the liveness sweep.
            registry_id (str): Broker address of the registry.
        """
        self.broker = broker
        self.scheduler = scheduler
        self.registry_id = registry_id
        self.heartbeat_timeout = heartbeat_timeout
        self.sweep_interval = sweep_interval

        self._records = {}  # {node_id: NodeRecord}
        self._running = False
        self._sweep_task = None

        self._handlers = {
            MessageType.REGISTER: self._handle_register,
            MessageType.UNREGISTER: self._handle_unregister,
            MessageType.HEARTBEAT: self._handle_heartbeat,
            MessageType.DISCOVERY_REQUEST: self._handle_discovery,
        }

    @property
    def online(self):
        return self._running

    def start(self):
        """Subscribe to the broker and start the liveness sweep."""
        if self._running:
            self._log(LogLevel.WARN, "Registry already running")
            return

        self._running = True
        self.broker.subscribe(self.registry_id, self._handle_message)
        self._sweep_task = self.scheduler.call_every(self.sweep_interval, self._scheduled_sweep,
                                                     name='registry liveness sweep')
        self._log(LogLevel.INFO, "Registry started - Ready for node registrations")

    def stop(self):
        if not self._running:
            self._log(LogLevel.WARN, "Registry already stopped")
            return

        self._running = False
        self.broker.unsubscribe(self.registry_id)
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None
        self._log(LogLevel.INFO, "Registry stopped")

    def reset(self):
        if self._running:
            self.stop()
        self._records.clear()

    # ----------------------------
    # Queries
    # ----------------------------
    def records(self):
        """Copies of all node records."""
        return [dataclasses.replace(r) for r in self._records.values()]

    def record(self, node_id):
        r = self._records.get(node_id)
        return dataclasses.replace(r) if r else None

    def online_count(self):
        return sum(1 for r in self._records.values() if r.status is NodeStatus.ONLINE)

    # ----------------------------
    # Message handling
    # ----------------------------
    def _handle_message(self, msg):
        handler = self._handlers.get(msg.type)
        if handler is None:
            self._log(LogLevel.WARN, f"Unknown message type: {msg.type.name}")
            self._reply(msg, MessageType.NACK, message.NackPayload(msg.id, message.NACK_UNSUPPORTED))
            return
        handler(msg)

    def _handle_register(self, msg):
        payload = msg.payload
        now = self.scheduler.now()

        self._records[payload.node_id] = NodeRecord(
            node_id=payload.node_id,
            name=payload.name,
            intersection=payload.intersection,
            status=NodeStatus.ONLINE,
            registered_at=now,
            last_heartbeat=now,
        )
        self._log(
            LogLevel.INFO,
            f"Node registered: {payload.name} ({payload.node_id}) at intersection {payload.intersection}",
            {'node_id': payload.node_id, 'intersection': payload.intersection},
        )
        self._reply(msg, MessageType.ACK, message.AckPayload(msg.id, message.ACK_REGISTERED))

    def _handle_unregister(self, msg):
        record = self._records.pop(msg.sender_id, None)
        if record:
            self._log(LogLevel.INFO, f"Node unregistered: {record.name} ({record.node_id})")

    def _handle_heartbeat(self, msg):
        record = self._records.get(msg.sender_id)
        if record is None:
            self._log(LogLevel.DEBUG, f"Heartbeat from unknown node {msg.sender_id}")
            self._reply(msg, MessageType.NACK, message.NackPayload(msg.id, message.NACK_UNKNOWN_NODE))
            return

        record.last_heartbeat = self.scheduler.now()
        if record.status is NodeStatus.OFFLINE:
            record.status = NodeStatus.ONLINE
            self._log(LogLevel.INFO, f"Node {record.name} is back ONLINE")

    def _handle_discovery(self, msg):
        nodes = tuple(
            message.NodeSummary(r.node_id, r.name, r.intersection, r.status)
            for r in self._records.values()
        )
        self._reply(msg, MessageType.DISCOVERY_RESPONSE, message.DiscoveryResponsePayload(nodes))

    def _reply(self, msg, msg_type, payload):
        reply = message.create_message(msg_type, self.registry_id, msg.sender_id, payload,
                                       self.scheduler.now())
        self.broker.send(reply)

    # ----------------------------
    # Liveness
    # ----------------------------
    def _scheduled_sweep(self):
        if not self._running:
            return
        self.sweep()

    def sweep(self):
        """
        Mark ONLINE nodes whose last heartbeat is older than the timeout as
        OFFLINE.

        Returns:
            list[str]: Ids of the nodes that changed status in this sweep.
        """
        now = self.scheduler.now()
        expired = []

        for node_id, record in self._records.items():
            age = now - record.last_heartbeat
            if record.status is NodeStatus.ONLINE and age > self.heartbeat_timeout:
                record.status = NodeStatus.OFFLINE
                expired.append(node_id)
                self._log(
                    LogLevel.WARN,
                    f"Node {record.name} ({node_id}) marked as OFFLINE - heartbeat timeout "
                    f"(last seen {age:.1f}s ago)",
                    {'node_id': node_id, 'last_heartbeat': record.last_heartbeat},
                )
        logger.debug(f"Liveness sweep at t={now:.1f}: {len(expired)} node(s) expired")
        return expired

    def _log(self, level, text, data=None):
        self.broker.log(level, self.registry_id, text, data)
