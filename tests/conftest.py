from __future__ import annotations

import random

import pytest

from traffic_control.broker import Broker
from traffic_control.message import MessageType, create_message
from traffic_control.scheduler import Scheduler


class StubActor:
    """Stand-in actor that records every message delivered to it."""

    def __init__(self, broker: Broker, actor_id: str) -> None:
        self.broker = broker
        self.actor_id = actor_id
        self.received = []
        broker.subscribe(actor_id, self.received.append)

    def of_type(self, msg_type: MessageType) -> list:
        return [m for m in self.received if m.type is msg_type]

    def send(self, msg_type: MessageType, receiver_id: str, payload, sender_id: str | None = None):
        msg = create_message(msg_type, sender_id or self.actor_id, receiver_id, payload,
                             self.broker.scheduler.now())
        return self.broker.send(msg)


@pytest.fixture
def scheduler() -> Scheduler:
    return Scheduler()


@pytest.fixture
def broker(scheduler: Scheduler) -> Broker:
    return Broker(scheduler, rng=random.Random(1234))


@pytest.fixture
def stub(broker: Broker):
    def make(actor_id: str) -> StubActor:
        return StubActor(broker, actor_id)

    return make


def log_messages(broker: Broker, source: str | None = None, level=None) -> list[str]:
    return [
        e.message for e in broker.logs()
        if (source is None or e.source == source) and (level is None or e.level is level)
    ]
