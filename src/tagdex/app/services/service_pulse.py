from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

from blinker import Namespace, Signal

logger = logging.getLogger(__name__)

SYNC_STAGE_TOPIC = "sync.stage"
SYNC_PASS_TOPIC = "sync.pass"


@dataclass(slots=True, frozen=True)
class PulseEvent:
    """Snapshot of a published service pulse."""

    topic: str
    payload: Mapping[str, Any]
    timestamp: float

    def as_payload(self) -> dict[str, Any]:
        return dict(self.payload)


class PulseListener(Protocol):
    def __call__(self, event: PulseEvent) -> Awaitable[None] | None:
        ...


class ServicePulse:
    """Pub/sub of the latest state of long-running services.

    The sync engine publishes its current stage and pass outcomes here; the
    admin surface and tests read the latest payload per topic.
    """

    def __init__(self) -> None:
        self._latest: dict[str, PulseEvent] = {}
        self._namespace = Namespace()
        self._broadcast_signal = Signal("service_pulse:*")

    def signal(self, topic: str) -> Signal:
        return self._namespace.signal(topic)

    def emit(self, topic: str, payload: Mapping[str, Any]) -> PulseEvent:
        """Record ``payload`` under ``topic`` and notify subscribers."""

        event = PulseEvent(
            topic=topic,
            payload=MappingProxyType(dict(payload)),
            timestamp=time.monotonic(),
        )
        self._latest[topic] = event
        for signal in (self.signal(topic), self._broadcast_signal):
            signal.send(self, event=event)
        return event

    def subscribe(
        self,
        listener: PulseListener,
        *,
        topics: Iterable[str] | None = None,
        replay_last: bool = False,
    ) -> Callable[[], None]:
        """Subscribe ``listener``; returns a callable that unsubscribes it."""

        topic_list = list(dict.fromkeys(topics)) if topics is not None else None

        def _receiver(sender: Any, *, event: PulseEvent | None = None, **_: Any) -> None:
            if event is not None:
                self._deliver(listener, event)

        signals = (
            [self._broadcast_signal]
            if topic_list is None
            else [self.signal(topic) for topic in topic_list]
        )
        for sig in signals:
            sig.connect(_receiver, sender=self, weak=False)

        if replay_last:
            for name, event in list(self._latest.items()):
                if topic_list is None or name in topic_list:
                    self._deliver(listener, event)

        def unsubscribe() -> None:
            for sig in signals:
                sig.disconnect(_receiver, sender=self)

        return unsubscribe

    def _deliver(self, listener: PulseListener, event: PulseEvent) -> None:
        try:
            result = listener(event)
        except Exception:
            logger.exception("Service pulse listener failed for topic %s", event.topic)
            return
        if asyncio.iscoroutine(result):
            asyncio.get_running_loop().create_task(result)

    def latest(self, topic: str) -> dict[str, Any] | None:
        event = self._latest.get(topic)
        return event.as_payload() if event else None

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {topic: event.as_payload() for topic, event in self._latest.items()}


__all__ = [
    "PulseEvent",
    "PulseListener",
    "SYNC_PASS_TOPIC",
    "SYNC_STAGE_TOPIC",
    "ServicePulse",
]
