"""Change feed: topic addressing, payload framing and subscription transports.

A topic is one table filtered by one column (``games`` by ``id``,
``participants`` by ``game_id``). Every payload carries the room name of the
topic it belongs to, the table, the event type and full before/after rows.
Payloads are validated into typed events here, at the subscription boundary,
before any callback sees them.
"""

import abc
import itertools
import logging
import threading
from dataclasses import dataclass
from functools import partial
from typing import Callable, Dict, List, Optional

import socketio
from socketio.exceptions import TimeoutError as AckTimeout
from pydantic import ValidationError

from poisoner.schemas import parse_change
from .errors import Transient

logger = logging.getLogger(__name__)

TOPIC_COLUMNS = {
    'games': 'id',
    'participants': 'game_id',
}
EVENT_TYPES = ('INSERT', 'UPDATE', 'DELETE')


@dataclass(frozen=True)
class Topic:
    table: str
    column: str
    value: str

    @property
    def room(self) -> str:
        return f"{self.table}:{self.column}={self.value}"

    def to_dict(self):
        return {'table': self.table, 'column': self.column, 'value': self.value}

    @classmethod
    def from_dict(cls, data: dict) -> 'Topic':
        table = (data or {}).get('table')
        column = (data or {}).get('column')
        value = (data or {}).get('value')
        if TOPIC_COLUMNS.get(table) != column or not value:
            raise ValueError(f"Unsupported topic: {data!r}")
        return cls(table, column, str(value))

    @classmethod
    def for_game(cls, game_id: str) -> 'Topic':
        return cls('games', 'id', str(game_id))

    @classmethod
    def for_participants(cls, game_id: str) -> 'Topic':
        return cls('participants', 'game_id', str(game_id))


def topic_for_row(table: str, row: dict) -> Topic:
    column = TOPIC_COLUMNS[table]
    return Topic(table, column, str(row[column]))


def change_payload(table: str, event_type: str, before: Optional[dict] = None,
                   after: Optional[dict] = None) -> dict:
    """Frame one row change for the feed."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type!r}")
    row = after if after is not None else before
    return {
        'topic': topic_for_row(table, row).room,
        'table': table,
        'event_type': event_type,
        'before': before,
        'after': after,
    }


_subscription_ids = itertools.count(1)


class Subscription:
    """Handle returned by ``ChangeFeed.subscribe``."""

    def __init__(self, topic: Topic, callback: Callable, on_reconnect: Optional[Callable] = None):
        self.id = next(_subscription_ids)
        self.topic = topic
        self.callback = callback
        self.on_reconnect = on_reconnect
        self.active = True

    def deliver(self, payload: dict) -> None:
        if not self.active:
            return
        try:
            event = parse_change(payload)
        except (ValidationError, ValueError) as exc:
            logger.error(f"[feed-invalid] topic={self.topic.room} dropped malformed payload: {exc}")
            return
        self.callback(event)

    def reconnected(self) -> None:
        if self.active and self.on_reconnect is not None:
            self.on_reconnect()

    def cancel(self) -> None:
        self.active = False

    def __repr__(self):
        return f"Subscription(id={self.id!r}, room={self.topic.room!r}, active={self.active!r})"


class ChangeFeed(abc.ABC):
    """Push subscription abstraction over row-level change notifications."""

    @abc.abstractmethod
    def subscribe(self, topic: Topic, callback: Callable,
                  on_reconnect: Optional[Callable] = None) -> Subscription:
        ...

    @abc.abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None:
        ...


class ChangeHub:
    """In-process fan-out: every feed created from the hub sees every publish."""

    def __init__(self):
        self._feeds: List['InProcessChangeFeed'] = []
        self._lock = threading.Lock()

    def feed(self, auto_deliver: bool = True) -> 'InProcessChangeFeed':
        feed = InProcessChangeFeed(self, auto_deliver=auto_deliver)
        with self._lock:
            self._feeds.append(feed)
        return feed

    def remove(self, feed: 'InProcessChangeFeed') -> None:
        with self._lock:
            if feed in self._feeds:
                self._feeds.remove(feed)

    def publish(self, table: str, event_type: str, before: Optional[dict] = None,
                after: Optional[dict] = None) -> None:
        payload = change_payload(table, event_type, before, after)
        with self._lock:
            feeds = list(self._feeds)
        for feed in feeds:
            feed._receive(payload)


class InProcessChangeFeed(ChangeFeed):
    """One client's view of a ``ChangeHub``.

    With ``auto_deliver`` off, payloads queue until ``flush`` so callers can
    reorder or duplicate deliveries.
    """

    def __init__(self, hub: ChangeHub, auto_deliver: bool = True):
        self.hub = hub
        self.auto_deliver = auto_deliver
        self._subs: Dict[int, Subscription] = {}
        self._pending: List[tuple] = []
        self._lock = threading.RLock()

    def subscribe(self, topic, callback, on_reconnect=None):
        sub = Subscription(topic, callback, on_reconnect)
        with self._lock:
            self._subs[sub.id] = sub
        return sub

    def unsubscribe(self, subscription):
        subscription.cancel()
        with self._lock:
            self._subs.pop(subscription.id, None)
            self._pending = [(s, p) for (s, p) in self._pending if s.id != subscription.id]

    @property
    def subscriptions(self) -> List[Subscription]:
        with self._lock:
            return list(self._subs.values())

    @property
    def pending(self) -> List[dict]:
        with self._lock:
            return [p for (_, p) in self._pending]

    def _receive(self, payload: dict) -> None:
        with self._lock:
            targets = [s for s in self._subs.values() if s.topic.room == payload['topic']]
            if not self.auto_deliver:
                self._pending.extend((s, payload) for s in targets)
                return
        for sub in targets:
            sub.deliver(payload)

    def flush(self, rng=None, duplicate: bool = False) -> int:
        """Deliver queued payloads, optionally shuffled and/or twice each."""
        with self._lock:
            batch = list(self._pending)
            self._pending = []
        if duplicate:
            batch = batch + batch
        if rng is not None:
            rng.shuffle(batch)
        for sub, payload in batch:
            sub.deliver(payload)
        return len(batch)

    def reconnect(self, drop_pending: bool = True) -> None:
        """Simulate a transport drop: lose queued payloads, then resync."""
        with self._lock:
            if drop_pending:
                self._pending = []
            subs = list(self._subs.values())
        for sub in subs:
            sub.reconnected()

    def close(self) -> None:
        with self._lock:
            for sub in self._subs.values():
                sub.cancel()
            self._subs.clear()
            self._pending = []
        self.hub.remove(self)


class SocketIOChangeFeed(ChangeFeed):
    """Change feed over the server's Socket.IO ``/feed`` namespace."""

    def __init__(self, url: str, namespace: str = '/feed', client=None, ack_timeout: float = 10):
        self.url = url
        self.namespace = namespace
        self.ack_timeout = ack_timeout
        self._client = client if client is not None else socketio.Client(reconnection=True)
        self._subs: Dict[int, Subscription] = {}
        self._room_refs: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._connected_once = False
        self._client.on('connect', self._on_connect, namespace=namespace)
        self._client.on('change', self._on_change, namespace=namespace)

    def connect(self, wait_timeout: int = 5) -> None:
        if not self._client.connected:
            self._client.connect(self.url, namespaces=[self.namespace], wait_timeout=wait_timeout)

    def close(self) -> None:
        with self._lock:
            for sub in self._subs.values():
                sub.cancel()
            self._subs.clear()
            self._room_refs.clear()
        if self._client.connected:
            self._client.disconnect()

    def start_background_task(self, target, *args, **kwargs):
        return self._client.start_background_task(target, *args, **kwargs)

    def subscribe(self, topic, callback, on_reconnect=None):
        sub = Subscription(topic, callback, on_reconnect)
        with self._lock:
            self._subs[sub.id] = sub
            refs = self._room_refs.get(topic.room, 0)
            self._room_refs[topic.room] = refs + 1
        if refs == 0 and self._client.connected:
            try:
                self._join(topic)
            except Transient:
                self._forget(sub)
                raise
        logger.info(f"[feed-subscribe] room={topic.room} sub={sub.id}")
        return sub

    def _join(self, topic: Topic) -> None:
        """Subscribe on the server and wait until the room is joined."""
        try:
            ack = self._client.call('subscribe', topic.to_dict(), namespace=self.namespace,
                                    timeout=self.ack_timeout)
        except AckTimeout as exc:
            raise Transient(f"No subscribe acknowledgment for {topic.room}") from exc
        if not ack or ack.get('room') != topic.room:
            raise Transient(f"Subscribe to {topic.room} was refused: {ack!r}")

    def _forget(self, subscription) -> int:
        subscription.cancel()
        with self._lock:
            if self._subs.pop(subscription.id, None) is None:
                return -1
            room = subscription.topic.room
            refs = self._room_refs.get(room, 0) - 1
            if refs > 0:
                self._room_refs[room] = refs
            else:
                self._room_refs.pop(room, None)
        return refs

    def unsubscribe(self, subscription):
        refs = self._forget(subscription)
        if refs < 0:
            return
        if refs == 0 and self._client.connected:
            self._client.emit('unsubscribe', subscription.topic.to_dict(), namespace=self.namespace)
        logger.info(f"[feed-unsubscribe] room={subscription.topic.room} sub={subscription.id}")

    def _on_connect(self):
        with self._lock:
            topics = {s.topic.room: s.topic for s in self._subs.values()}
            reconnecting = self._connected_once
            self._connected_once = True
        # Handlers run on the socket's read loop, so acks are taken as callbacks here
        for room, topic in topics.items():
            callback = partial(self._on_rejoined, room) if reconnecting else None
            self._client.emit('subscribe', topic.to_dict(), namespace=self.namespace, callback=callback)
        if reconnecting:
            logger.info(f"[feed-reconnect] resubscribing rooms={sorted(topics)}")

    def _on_rejoined(self, room, *ack):
        with self._lock:
            targets = [s for s in self._subs.values() if s.topic.room == room]
        for sub in targets:
            sub.reconnected()

    def _on_change(self, payload):
        room = (payload or {}).get('topic')
        with self._lock:
            targets = [s for s in self._subs.values() if s.topic.room == room]
        for sub in targets:
            sub.deliver(payload)
