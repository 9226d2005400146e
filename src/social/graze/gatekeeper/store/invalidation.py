"""Publish/subscribe channel for player record changes.

The coordinator publishes a `RecordChanged` event after every successful write.
Caches that hold decisions derived from player records subscribe to it. The
coordinator never holds a reference to any cache, so a cache that has been torn
down (and unsubscribed) simply stops receiving events.
"""

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict

from social.graze.gatekeeper.app.tasks import BackgroundTaskRunner, TaskRejectedError
from social.graze.gatekeeper.model.players import PlayerRecord
from social.graze.gatekeeper.resolve.result import parse_identity_id

logger = logging.getLogger(__name__)


class RecordChanged(BaseModel):
    """A player record was created, updated or deleted.

    `previous` is the last version the coordinator had cached (None when it was
    unknown) and `current` is the stored version (None after a delete).
    """

    model_config = ConfigDict(frozen=True)

    lowercase_nickname: str
    previous: Optional[PlayerRecord] = None
    current: Optional[PlayerRecord] = None

    def identity_ids(self) -> Set[uuid.UUID]:
        ids: Set[uuid.UUID] = set()
        for record in (self.previous, self.current):
            if record is None:
                continue
            ids.add(record.identity_id)
            remote = parse_identity_id(record.remote_identity_id)
            if remote is not None:
                ids.add(remote)
        return ids


Subscriber = Callable[[RecordChanged], Union[None, Awaitable[None]]]


class InvalidationChannel:
    """
    Fan-out of record change events to any number of subscribers.

    Delivery is asynchronous: `publish` returns immediately and each subscriber is
    invoked on the background task runner. With no subscribers `publish` is a
    no-op.
    """

    def __init__(self, runner: BackgroundTaskRunner) -> None:
        self.runner = runner
        self._subscribers: List[Subscriber] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber and return a callable that removes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            self.unsubscribe(subscriber)

        return unsubscribe

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def publish(self, event: RecordChanged) -> List[asyncio.Task]:
        tasks = []
        for subscriber in list(self._subscribers):
            try:
                tasks.append(
                    self.runner.submit(
                        self._deliver(subscriber, event),
                        name=f"invalidate:{event.lowercase_nickname}",
                    )
                )
            except TaskRejectedError as e:
                logger.warning(
                    "Dropping invalidation for %s: %s", event.lowercase_nickname, e
                )
        return tasks

    async def _deliver(self, subscriber: Subscriber, event: RecordChanged) -> None:
        result = subscriber(event)
        if asyncio.iscoroutine(result):
            await result
