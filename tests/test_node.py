from __future__ import annotations

import dataclasses
import random

import pytest

from traffic_control import message
from traffic_control.broker import LogLevel
from traffic_control.message import DEFAULT_TIMING, LightState, MessageType, NodeStatus, TrafficTiming
from traffic_control.node import TrafficLightNode
from traffic_control.sensor import TrafficSensor, build_metrics

from .conftest import log_messages


@pytest.fixture
def servers(stub):
    return stub("registry"), stub("coordinator")


@pytest.fixture
def node(broker, scheduler, servers) -> TrafficLightNode:
    node = TrafficLightNode(broker, scheduler, "N1", "Main&1st", node_id="n1",
                            sensor=TrafficSensor(rng=random.Random(5)))
    node.start()
    return node


def transitions(node):
    seen = []
    node.on_state_change(lambda n, prev, new: seen.append((n.scheduler.now(), prev, new)))
    return seen


def test_start_registers_with_registry_and_coordinator(node, servers, scheduler) -> None:
    registry, coordinator = servers
    scheduler.run_for(0.1)

    for server in (registry, coordinator):
        (reg,) = server.of_type(MessageType.REGISTER)
        assert reg.sender_id == "n1"
        assert reg.payload == message.RegisterPayload("n1", "N1", "Main&1st")
    assert node.running
    assert node.state is LightState.RED


def test_light_cycle_follows_timing(node, scheduler) -> None:
    seen = transitions(node)
    scheduler.run_for(100.0)

    assert seen == [
        (30.0, LightState.RED, LightState.GREEN),
        (60.0, LightState.GREEN, LightState.YELLOW),
        (65.0, LightState.YELLOW, LightState.RED),
        (95.0, LightState.RED, LightState.GREEN),
    ]
    assert node.state_entered_at == 95.0


def test_timing_change_applies_on_next_entry(node, scheduler, servers) -> None:
    _, coordinator = servers
    seen = transitions(node)
    scheduler.run_for(10.0)

    new_timing = TrafficTiming(green=40, yellow=5, red=20)
    coordinator.send(MessageType.TIMING_ADJUSTMENT, "n1",
                     message.TimingAdjustmentPayload("n1", new_timing, "Adjustment for HIGH congestion"))
    scheduler.run_for(0.1)
    assert node.timing == new_timing

    scheduler.run_for(90.0)
    # RED entered under the old timing still lasts 30s.
    assert [t for t, _, _ in seen] == [30.0, 70.0, 75.0, 95.0]


def test_timing_adjustment_is_logged_with_old_and_new(node, scheduler, servers, broker) -> None:
    _, coordinator = servers
    new_timing = TrafficTiming(green=45, yellow=5, red=25)
    coordinator.send(MessageType.TIMING_ADJUSTMENT, "n1",
                     message.TimingAdjustmentPayload("n1", new_timing, "Adjustment for HIGH congestion"))
    scheduler.run_for(0.1)

    (entry,) = [e for e in broker.logs() if e.source == "n1" and "Timing adjusted" in e.message]
    assert entry.level is LogLevel.INFO
    assert entry.data == {"old_timing": DEFAULT_TIMING, "new_timing": new_timing}


def test_timing_accessor_returns_a_copy(node) -> None:
    timing = node.timing
    assert timing == DEFAULT_TIMING
    assert timing is not node.timing
    with pytest.raises(dataclasses.FrozenInstanceError):
        timing.green = 1


def test_periodic_heartbeats_and_metrics(node, scheduler, servers) -> None:
    registry, coordinator = servers
    scheduler.run_for(9.5)

    assert len(registry.of_type(MessageType.HEARTBEAT)) == 3
    reports = coordinator.of_type(MessageType.METRICS_REPORT)
    assert len(reports) == 4
    assert reports[-1].payload.metrics == node.last_metrics
    assert reports[-1].payload.current_timing == DEFAULT_TIMING


def test_forced_metrics_report(node, scheduler, servers) -> None:
    _, coordinator = servers
    forced = build_metrics(50, 70, 35, scheduler.now())
    assert node.report_metrics(forced) is forced
    scheduler.run_for(0.1)

    (report,) = coordinator.of_type(MessageType.METRICS_REPORT)
    assert report.payload.metrics == forced
    assert report.payload.current_state is LightState.RED
    assert node.last_metrics == forced


def test_stop_cancels_everything(node, scheduler, servers, broker) -> None:
    registry, coordinator = servers
    seen = transitions(node)
    scheduler.run_for(5.0)
    unregistration = node.stop()
    assert node.stop() is None
    scheduler.run_for(100.0)

    assert unregistration.delivered is True

    assert not node.running
    assert not broker.is_connected("n1")
    assert len(registry.of_type(MessageType.HEARTBEAT)) == 1
    assert len(coordinator.of_type(MessageType.METRICS_REPORT)) == 2
    assert seen == []
    (unreg,) = registry.of_type(MessageType.UNREGISTER)
    assert unreg.sender_id == "n1"


def test_duplicate_start_and_stop_warn_once(node, scheduler, servers, broker) -> None:
    registry, _ = servers
    node.start()
    scheduler.run_for(9.5)
    assert len(registry.of_type(MessageType.HEARTBEAT)) == 3
    assert len(registry.of_type(MessageType.REGISTER)) == 1

    node.stop()
    node.stop()
    assert log_messages(broker, source="n1", level=LogLevel.WARN) == [
        "Node N1 already running",
        "Node N1 already stopped",
    ]
    scheduler.run_for(1.0)
    assert len(registry.of_type(MessageType.UNREGISTER)) == 1


def test_report_on_stopped_node_is_refused(broker, scheduler, servers) -> None:
    node = TrafficLightNode(broker, scheduler, "N1", "Main&1st", node_id="n1")
    assert node.report_metrics() is None
    scheduler.run_for(1.0)
    assert servers[1].received == []


def test_nack_unknown_node_triggers_reregistration(node, scheduler, servers) -> None:
    registry, _ = servers
    registry.send(MessageType.NACK, "n1", message.NackPayload("msg_0", message.NACK_UNKNOWN_NODE))
    scheduler.run_for(0.1)

    assert len(registry.of_type(MessageType.REGISTER)) == 2


def test_discovery_response_populates_peers(node, scheduler, servers) -> None:
    registry, _ = servers
    node.request_discovery()
    scheduler.run_for(0.1)
    assert len(registry.of_type(MessageType.DISCOVERY_REQUEST)) == 1

    nodes = (
        message.NodeSummary("n1", "N1", "Main&1st", NodeStatus.ONLINE),
        message.NodeSummary("n2", "N2", "Main&5th", NodeStatus.OFFLINE),
    )
    registry.send(MessageType.DISCOVERY_RESPONSE, "n1", message.DiscoveryResponsePayload(nodes))
    scheduler.run_for(0.1)

    assert node.known_peers == (nodes[1],)


def test_ack_is_logged_and_other_types_ignored(node, scheduler, servers, broker) -> None:
    registry, _ = servers
    registry.send(MessageType.ACK, "n1", message.AckPayload("msg_0", message.ACK_REGISTERED))
    registry.send(MessageType.HEARTBEAT, "n1", message.HeartbeatPayload("registry"))
    scheduler.run_for(0.1)

    node_logs = [e for e in broker.logs() if e.source == "n1"]
    assert [e.level for e in node_logs if "confirmed" in e.message] == [LogLevel.DEBUG]
    assert not any("HEARTBEAT" in e.message for e in node_logs)
    assert node.state is LightState.RED


def test_state_listener_unsubscribe(node, scheduler) -> None:
    seen = []
    unsubscribe = node.on_state_change(lambda n, prev, new: seen.append(new))
    scheduler.run_for(31.0)
    unsubscribe()
    unsubscribe()
    scheduler.run_for(60.0)
    assert seen == [LightState.GREEN]


def test_failing_listener_does_not_break_cycle(node, scheduler) -> None:
    def boom(n, prev, new):
        raise RuntimeError("listener down")

    node.on_state_change(boom)
    seen = transitions(node)
    scheduler.run_for(66.0)
    assert [new for _, _, new in seen] == [LightState.GREEN, LightState.YELLOW, LightState.RED]


def test_rush_hour_toggles_sensor(node) -> None:
    node.set_rush_hour(True)
    assert node.sensor.rush_hour_multiplier == 2.5
    node.set_rush_hour(True, multiplier=3)
    assert node.sensor.rush_hour_multiplier == 3
    node.set_rush_hour(False)
    assert node.sensor.rush_hour_multiplier == 1.0
