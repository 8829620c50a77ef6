"""
Tests for the relay service: queue ordering, event boundary, fan-out.
"""

import asyncio

import pytest

from backend.config import RelayConfig, RollOwnership
from backend.models import Message
from backend.relay.connection import ConnectionStatus
from backend.relay.schemas import ExecutionTier
from backend.relay.service import RelayObserver, RelayService
from tests.factories import build_roll_payload
from tests.test_connection import FakeDiceService, eventually, relay_config, sse


class Collector(RelayObserver):
    def __init__(self, log=None):
        self.log = log if log is not None else []
        self.statuses = []
        self.notifications = []

    def on_status_change(self, status):
        self.statuses.append(status)

    def on_roll_processed(self, outcome):
        self.log.append(("done", outcome.event.action, outcome.tier))

    def on_notification(self, level, message):
        self.notifications.append((level, message))


def test_events_processed_in_arrival_order(session_factory, make_character):
    make_character(owner_id="player-1")
    make_character(name="Bram", remote_character_id="2002")
    log = []

    async def slow_executor(owner_id, payload):
        log.append(("rpc-start", payload["rollInfo"]["action"]))
        await asyncio.sleep(0.05)
        log.append(("rpc-end", payload["rollInfo"]["action"]))
        return False

    async def scenario():
        service = RelayService(
            RelayConfig(roll_ownership=RollOwnership.PLAYER),
            session_factory=session_factory,
            presence=lambda user_id: user_id == "player-1",
            remote_executor=slow_executor,
        )
        service.add_observer(Collector(log))
        await service.start(connect=False)
        service.enqueue(build_roll_payload(action="Stealth"))
        service.enqueue(build_roll_payload(action="Perception", entity_id="2002", name="Bram"))
        await service.join()
        await service.stop()

    asyncio.run(scenario())

    assert log == [
        ("rpc-start", "Stealth"),
        ("rpc-end", "Stealth"),
        ("done", "Stealth", ExecutionTier.LOCAL),
        ("done", "Perception", ExecutionTier.LOCAL),
    ]


def test_malformed_event_is_dropped_and_worker_keeps_going(session_factory, make_character):
    make_character()
    collector = Collector()

    async def scenario():
        service = RelayService(RelayConfig(), session_factory=session_factory)
        service.add_observer(collector)
        await service.start(connect=False)
        service.enqueue({"nope": True})
        service.enqueue(build_roll_payload(action="Perception"))
        await service.join()
        running = service.running
        await service.stop()
        return running, service.running

    running, after_stop = asyncio.run(scenario())

    assert running is True
    assert after_stop is False
    assert collector.log == [("done", "Perception", ExecutionTier.LOCAL)]


def test_badly_typed_events_do_not_stop_the_worker(session_factory, make_character):
    make_character()
    bad_context = build_roll_payload(action="Perception")
    bad_context["data"]["context"] = "oops"
    bad_action = build_roll_payload()
    bad_action["data"]["action"] = 42

    async def scenario():
        service = RelayService(RelayConfig(), session_factory=session_factory)
        await service.start(connect=False)
        first = await service.submit(bad_context)
        second = await service.submit(bad_action)
        third = await service.submit(build_roll_payload(action="Perception"))
        running = service.running
        await service.stop()
        return first, second, third, running

    first, second, third, running = asyncio.run(scenario())

    assert first is None
    assert second is None
    assert third.tier == ExecutionTier.LOCAL
    assert running is True


def test_worker_survives_unexpected_failure(session_factory, make_character):
    make_character()
    calls = []

    def flaky_sessions():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("database unavailable")
        return session_factory()

    async def scenario():
        service = RelayService(RelayConfig(), session_factory=flaky_sessions)
        await service.start(connect=False)
        failed = await asyncio.wait_for(service.submit(build_roll_payload()), timeout=5)
        recovered = await service.submit(build_roll_payload())
        await service.stop()
        return failed, recovered

    failed, recovered = asyncio.run(scenario())

    assert failed is None
    assert recovered.tier == ExecutionTier.LOCAL


def test_submit_returns_outcome(session_factory, make_character, db):
    make_character()

    async def scenario():
        service = RelayService(RelayConfig(), session_factory=session_factory)
        await service.start(connect=False)
        outcome = await service.submit(build_roll_payload(action="Perception"))
        dropped = await service.submit({"data": "nope"})
        await service.stop()
        return outcome, dropped

    outcome, dropped = asyncio.run(scenario())

    assert outcome.tier == ExecutionTier.LOCAL
    assert db.get(Message, outcome.message_id).message_type == "skill_roll"
    assert dropped is None


def test_submit_requires_running_service(session_factory):
    service = RelayService(RelayConfig(), session_factory=session_factory)

    with pytest.raises(RuntimeError):
        asyncio.run(service.submit(build_roll_payload()))


def test_settings_apply_to_next_event(session_factory):
    service = RelayService(RelayConfig(), session_factory=session_factory)

    settings = service.update_settings(roll_ownership=RollOwnership.PLAYER, skip_spell_slot_consumption=True)

    assert settings == {"roll_ownership": "player", "skip_spell_slot_consumption": True}
    assert service.router.ownership_provider() == RollOwnership.PLAYER
    assert service.dispatcher.skip_spell_slot() is True


def test_unconfigured_connect_notifies_observers(session_factory):
    collector = Collector()

    async def scenario():
        service = RelayService(RelayConfig(), session_factory=session_factory)
        service.add_observer(collector)
        await service.start(connect=True)
        await service.connection.connect()
        await service.stop()

    asyncio.run(scenario())

    assert collector.statuses == []
    assert collector.notifications[0][0] == "warning"


def test_streamed_roll_is_recorded(session_factory, make_character, db):
    make_character()
    fake = FakeDiceService(streams=[[sse(build_roll_payload(action="Perception", sets=(("d20", [13]),)))]])
    collector = Collector()

    async def scenario():
        service = RelayService(relay_config(), session_factory=session_factory, transport=fake.transport())
        service.add_observer(collector)
        await service.start()
        await eventually(lambda: collector.log)
        await service.stop()

    asyncio.run(scenario())

    assert collector.statuses == [
        ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED, ConnectionStatus.DISCONNECTED,
    ]
    message = db.query(Message).one()
    assert message.extra_data["roll"]["dice"][0]["result"] == 13
