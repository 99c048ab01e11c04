"""Typed bot events and event sinks.

Bots push a ``BotEvent`` to the sink they were built with. A sink is any
callable taking one event; persistence or notification layers subscribe by
passing their own callable to ``BotManager``.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .logging_setup import logger


class BotEventType(str, Enum):
    STARTED = "started"
    STOPPED = "stopped"
    TRADE = "trade"
    ERROR = "error"
    CRITICAL_ERROR = "critical_error"


@dataclass(frozen=True)
class BotEvent:
    """Something a bot did or suffered.

    ``trade`` events carry ``signal`` and ``order``; ``error`` events carry
    ``error`` and a ``context`` dict (pair, stage, signal); ``critical_error``
    carries the last error and the failure count in ``context``.
    """

    type: BotEventType
    user_id: str
    strategy_id: str
    active_strategy_id: str
    signal: Optional[Any] = None
    order: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "user_id": self.user_id,
            "strategy_id": self.strategy_id,
            "active_strategy_id": self.active_strategy_id,
            "signal": self.signal.to_dict() if self.signal is not None else None,
            "order": self.order,
            "error": repr(self.error) if self.error is not None else None,
            "context": {k: (v.to_dict() if hasattr(v, "to_dict") else v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
        }


EventSink = Callable[[BotEvent], Any]


class QueueEventSink:
    """Push events onto an asyncio.Queue for a consumer task."""

    def __init__(self, queue: Optional[asyncio.Queue] = None):
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()

    def __call__(self, event: BotEvent) -> None:
        self.queue.put_nowait(event)


class EventCollector:
    """Keep every event in memory; handy for status dumps and tests."""

    def __init__(self):
        self.events: List[BotEvent] = []

    def __call__(self, event: BotEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: BotEventType) -> List[BotEvent]:
        return [e for e in self.events if e.type == event_type]


def dispatch(sink: Optional[EventSink], event: BotEvent) -> None:
    """Deliver ``event`` to ``sink``; a failing sink is logged, never raised."""
    if sink is None:
        return
    try:
        sink(event)
    except Exception as e:
        logger.exception(f"Event sink failed | event={event.type.value} error={e!r}")
