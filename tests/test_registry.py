from __future__ import annotations

import pytest

from traffic_control import message
from traffic_control.broker import LogLevel
from traffic_control.message import MessageType, NodeStatus
from traffic_control.registry import Registry

from .conftest import log_messages


@pytest.fixture
def registry(broker, scheduler) -> Registry:
    registry = Registry(broker, scheduler, heartbeat_timeout=10.0, sweep_interval=5.0)
    registry.start()
    return registry


def register(node, name="N1", intersection="Main&1st"):
    node.send(MessageType.REGISTER, "registry", message.RegisterPayload(node.actor_id, name, intersection))


def test_registration_creates_online_record_and_acks(registry, scheduler, stub) -> None:
    node = stub("n1")
    register(node)
    scheduler.run_for(0.1)

    record = registry.record("n1")
    assert record.status is NodeStatus.ONLINE
    assert (record.name, record.intersection) == ("N1", "Main&1st")
    assert record.registered_at == record.last_heartbeat

    acks = node.of_type(MessageType.ACK)
    assert len(acks) == 1
    assert acks[0].payload.status == message.ACK_REGISTERED
    assert acks[0].payload.original_message_id.startswith("msg_")


def test_discovery_round_trip(registry, scheduler, stub) -> None:
    node = stub("n1")
    register(node)
    node.send(MessageType.DISCOVERY_REQUEST, "registry", message.DiscoveryRequestPayload())
    scheduler.run_for(0.1)

    responses = node.of_type(MessageType.DISCOVERY_RESPONSE)
    assert len(responses) == 1
    assert responses[0].payload.nodes == (
        message.NodeSummary("n1", "N1", "Main&1st", NodeStatus.ONLINE),
    )


def test_silent_node_goes_offline_and_heartbeat_brings_it_back(registry, scheduler, stub) -> None:
    node = stub("n1")
    register(node)
    scheduler.run_for(10.0)
    # Sweeps at t=5 and t=10 saw a heartbeat younger than the timeout.
    assert registry.record("n1").status is NodeStatus.ONLINE

    scheduler.run_for(5.5)
    record = registry.record("n1")
    assert record.status is NodeStatus.OFFLINE
    assert registry.online_count() == 0

    node.send(MessageType.HEARTBEAT, "registry", message.HeartbeatPayload("n1"))
    scheduler.run_for(0.1)

    recovered = registry.record("n1")
    assert recovered.status is NodeStatus.ONLINE
    assert recovered.registered_at == record.registered_at
    assert len(node.of_type(MessageType.ACK)) == 1
    assert "Node N1 is back ONLINE" in log_messages(registry.broker, source="registry")


def test_sweep_is_idempotent(registry, scheduler, stub) -> None:
    node = stub("n1")
    register(node)
    scheduler.run_for(0.1)
    registry.stop()
    scheduler.run_for(20.0)

    assert registry.sweep() == ["n1"]
    first = registry.records()
    assert registry.sweep() == []
    assert registry.records() == first

    offline_warnings = [m for m in log_messages(registry.broker, level=LogLevel.WARN) if "marked as OFFLINE" in m]
    assert len(offline_warnings) == 1


def test_unregister_removes_record_by_sender(registry, scheduler, stub) -> None:
    node = stub("n1")
    register(node)
    scheduler.run_for(0.1)

    # Payload names another node; the sender is what counts.
    node.send(MessageType.UNREGISTER, "registry", message.UnregisterPayload("someone-else"))
    scheduler.run_for(0.1)

    assert registry.record("n1") is None
    assert registry.records() == []


def test_heartbeat_from_unknown_node_is_nacked(registry, scheduler, stub) -> None:
    node = stub("ghost")
    node.send(MessageType.HEARTBEAT, "registry", message.HeartbeatPayload("ghost"))
    scheduler.run_for(0.1)

    nacks = node.of_type(MessageType.NACK)
    assert [n.payload.reason for n in nacks] == [message.NACK_UNKNOWN_NODE]
    assert registry.records() == []


def test_unsupported_message_type_is_nacked(registry, scheduler, stub) -> None:
    node = stub("n1")
    node.send(MessageType.UNREGISTER, "registry", message.UnregisterPayload("n1"))
    node.send(MessageType.ACK, "registry", message.AckPayload("msg_0", "OK"))
    scheduler.run_for(0.1)

    assert [n.payload.reason for n in node.of_type(MessageType.NACK)] == [message.NACK_UNSUPPORTED]
    assert "Unknown message type: ACK" in log_messages(registry.broker, source="registry")


def test_duplicate_start_and_stop_only_warn(registry, broker) -> None:
    registry.start()
    assert registry.online
    assert broker.subscribers().count("registry") == 1

    registry.stop()
    registry.stop()
    assert not registry.online
    assert not broker.is_connected("registry")

    warnings = log_messages(broker, source="registry", level=LogLevel.WARN)
    assert warnings == ["Registry already running", "Registry already stopped"]


def test_stopped_registry_does_not_sweep(registry, scheduler, stub) -> None:
    node = stub("n1")
    register(node)
    scheduler.run_for(0.1)
    registry.stop()

    scheduler.run_for(60.0)
    assert registry.record("n1").status is NodeStatus.ONLINE
