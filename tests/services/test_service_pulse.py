from __future__ import annotations

from tagdex.app.services.service_pulse import (
    SYNC_PASS_TOPIC,
    SYNC_STAGE_TOPIC,
    PulseEvent,
    ServicePulse,
)


def test_latest_payload_per_topic() -> None:
    pulse = ServicePulse()
    pulse.emit(SYNC_STAGE_TOPIC, {"stage": "fetching_new"})
    pulse.emit(SYNC_STAGE_TOPIC, {"stage": "idle"})

    assert pulse.latest(SYNC_STAGE_TOPIC) == {"stage": "idle"}
    assert pulse.latest(SYNC_PASS_TOPIC) is None
    assert pulse.snapshot() == {SYNC_STAGE_TOPIC: {"stage": "idle"}}


def test_subscribe_filters_topics_and_unsubscribes() -> None:
    pulse = ServicePulse()
    received: list[PulseEvent] = []
    unsubscribe = pulse.subscribe(received.append, topics=[SYNC_PASS_TOPIC])

    pulse.emit(SYNC_STAGE_TOPIC, {"stage": "idle"})
    pulse.emit(SYNC_PASS_TOPIC, {"outcome": "ok"})
    unsubscribe()
    pulse.emit(SYNC_PASS_TOPIC, {"outcome": "transient"})

    assert [event.as_payload() for event in received] == [{"outcome": "ok"}]


def test_replay_last_delivers_current_state() -> None:
    pulse = ServicePulse()
    pulse.emit(SYNC_STAGE_TOPIC, {"stage": "updating_tags"})
    received: list[PulseEvent] = []

    pulse.subscribe(received.append, replay_last=True)
    pulse.emit(SYNC_PASS_TOPIC, {"outcome": "ok"})

    assert [event.topic for event in received] == [SYNC_STAGE_TOPIC, SYNC_PASS_TOPIC]


def test_failing_listener_does_not_block_others() -> None:
    pulse = ServicePulse()
    received: list[PulseEvent] = []

    def _broken(event: PulseEvent) -> None:
        raise RuntimeError("boom")

    pulse.subscribe(_broken)
    pulse.subscribe(received.append)
    pulse.emit(SYNC_PASS_TOPIC, {"outcome": "ok"})

    assert len(received) == 1
