# hub.py
import asyncio
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union
from uuid import UUID

import structlog
from pydantic import BaseModel, Field, TypeAdapter

logger = structlog.get_logger(__name__)


class ConnectedData(BaseModel):
    user_id: UUID


class BudgetUpdatedData(BaseModel):
    plan_id: UUID
    spent_cents: int
    remaining_cents: int


class AIAdvicesData(BaseModel):
    plan_id: UUID
    count: int


class _BaseEvent(BaseModel):
    timestamp: Optional[datetime] = None

    def to_json(self) -> str:
        return self.model_dump_json()

    def to_sse(self) -> str:
        return f"event: {self.type}\ndata: {self.to_json()}\n\n"


class ConnectedEvent(_BaseEvent):
    type: Literal["connected"] = "connected"
    data: ConnectedData


class BudgetUpdatedEvent(_BaseEvent):
    type: Literal["budget_updated"] = "budget_updated"
    data: BudgetUpdatedData


class AIAdvicesEvent(_BaseEvent):
    type: Literal["ai_advices"] = "ai_advices"
    data: AIAdvicesData


Event = Annotated[
    Union[ConnectedEvent, BudgetUpdatedEvent, AIAdvicesEvent],
    Field(discriminator="type"),
]
event_adapter = TypeAdapter(Event)


def budget_updated(plan_id, spent_cents, remaining_cents) -> BudgetUpdatedEvent:
    return BudgetUpdatedEvent(
        data=BudgetUpdatedData(
            plan_id=plan_id, spent_cents=spent_cents, remaining_cents=remaining_cents
        )
    )


def ai_advices(plan_id, count) -> AIAdvicesEvent:
    return AIAdvicesEvent(data=AIAdvicesData(plan_id=plan_id, count=count))


def connected(user_id) -> ConnectedEvent:
    return ConnectedEvent(data=ConnectedData(user_id=user_id))


def stamp(event):
    return event.model_copy(update={"timestamp": datetime.now(timezone.utc)})


class ChannelClosed(Exception):
    pass


class Channel:
    """Bounded single-consumer mailbox.

    Any thread may ``offer`` and it never blocks. The consumer awaits
    ``receive`` on its event loop, so an idle subscriber holds no worker
    thread.
    """

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._items = deque()
        self._closed = False
        self._lock = threading.Lock()
        self._loop = None
        self._wakeup = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _wake(self):
        # Caller holds the lock.
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wakeup.set)

    def offer(self, event) -> bool:
        with self._lock:
            if self._closed or len(self._items) >= self.capacity:
                return False
            self._items.append(event)
            self._wake()
            return True

    async def receive(self, timeout: Optional[float] = None):
        """Next event, or None after ``timeout`` seconds.

        Raises ChannelClosed once the channel is closed and drained.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            with self._lock:
                if self._items:
                    return self._items.popleft()
                if self._closed:
                    raise ChannelClosed()
                if self._loop is not loop:
                    self._loop = loop
                    self._wakeup = asyncio.Event()
                self._wakeup.clear()
                wakeup = self._wakeup

            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return None
            try:
                await asyncio.wait_for(wakeup.wait(), remaining)
            except asyncio.TimeoutError:
                return None

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._wake()

    def __len__(self):
        return len(self._items)


class NotificationHub:
    def __init__(self, buffer_size: int = 10):
        self.buffer_size = buffer_size
        self._lock = threading.RLock()
        self._subscribers = {}

    def subscribe(self, user_id):
        channel = Channel(self.buffer_size)
        with self._lock:
            self._subscribers.setdefault(user_id, set()).add(channel)
        logger.debug("subscriber added", user_id=str(user_id))

        def unsubscribe():
            with self._lock:
                channels = self._subscribers.get(user_id)
                if channels is None or channel not in channels:
                    return
                channels.discard(channel)
                if not channels:
                    del self._subscribers[user_id]
            channel.close()
            logger.debug("subscriber removed", user_id=str(user_id))

        return channel, unsubscribe

    def publish(self, user_id, event):
        event = stamp(event)
        with self._lock:
            channels = list(self._subscribers.get(user_id, ()))
            for channel in channels:
                if not channel.offer(event):
                    logger.debug(
                        "event dropped", user_id=str(user_id), event_type=event.type
                    )
        return len(channels)

    def subscriber_count(self, user_id) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, ()))
