"""
Outbound events emitted by the core for the notifier and trade storage.

Decision code calls `EventBus.emit()` and moves on; delivery to sinks happens
later from `dispatch_pending()` (driven by the runtime's dispatcher task), so
a slow webhook or disk never holds up a state transition.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    DETECTION = "detection"
    BUY = "buy"
    PROFIT_CLOSE = "profit_close"
    LOSS_CLOSE = "loss_close"
    TRAILING_CLOSE = "trailing_close"
    SUMMARY = "summary"
    RISK_ALERT = "risk_alert"
    STARTUP = "startup"
    TRADE_RECORD = "trade_record"


@dataclass
class OutboundEvent:
    type: EventType
    title: str
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)


Sink = Callable[[OutboundEvent], None]


class EventBus:
    """Bounded outbox with fan-out to registered sinks."""

    def __init__(self, max_pending: int = 1000):
        self._pending: Deque[OutboundEvent] = deque(maxlen=max_pending)
        self._sinks: List[Sink] = []
        self._wakeup: Optional[asyncio.Event] = None
        self.emitted_count = 0
        self.delivered_count = 0

    def subscribe(self, sink: Sink) -> None:
        self._sinks.append(sink)

    def emit(self, event_type: EventType, title: str, message: str = "", **data) -> OutboundEvent:
        event = OutboundEvent(type=event_type, title=title, message=message, data=data)
        if len(self._pending) == self._pending.maxlen:
            logger.warning(f"Event outbox full, dropping oldest ({self._pending[0].type.value})")
        self._pending.append(event)
        self.emitted_count += 1
        if self._wakeup is not None:
            self._wakeup.set()
        return event

    @property
    def pending(self) -> List[OutboundEvent]:
        return list(self._pending)

    def pending_of(self, event_type: EventType) -> List[OutboundEvent]:
        return [e for e in self._pending if e.type == event_type]

    def dispatch_pending(self) -> int:
        """Deliver every queued event to every sink. Returns events delivered."""
        delivered = 0
        while True:
            # A cancelled dispatcher thread may still be draining concurrently
            try:
                event = self._pending.popleft()
            except IndexError:
                break
            for sink in self._sinks:
                try:
                    sink(event)
                except Exception as exc:
                    logger.error(f"Event sink failed for {event.type.value}: {exc}", exc_info=True)
            delivered += 1
        self.delivered_count += delivered
        return delivered

    async def run(self, interval: float = 0.5) -> None:
        """Drain the outbox until cancelled. Sinks run in a worker thread."""
        self._wakeup = asyncio.Event()
        try:
            while True:
                if self._pending:
                    await asyncio.to_thread(self.dispatch_pending)
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._wakeup = None
