"""Tests for broadcast group bookkeeping."""

import json
from types import SimpleNamespace

import redis

from duochat import hub as hub_module
from duochat.hub import Connection, Hub, conversation_key, user_key

from tests.conftest import FakeWebSocket


def _connection(user_id):
    return Connection(FakeWebSocket(), user_id)


def test_group_keys():
    assert user_key(7) == 'user:7'
    assert conversation_key(12) == 'conversation:12'


def test_join_broadcast_leave():
    hub = Hub()
    first, second = _connection(1), _connection(2)
    hub.join('conversation:1', first)
    hub.join('conversation:1', second)

    hub.broadcast('conversation:1', {'type': 'message', 'message': {'id': 1}})
    assert first.ws.sent == [{'type': 'message', 'message': {'id': 1}}]
    assert second.ws.sent == first.ws.sent

    hub.leave('conversation:1', second)
    hub.broadcast('conversation:1', {'type': 'ping'})
    assert len(first.ws.sent) == 2
    assert len(second.ws.sent) == 1


def test_broadcast_to_empty_group_is_a_noop():
    hub = Hub()
    hub.broadcast('conversation:404', {'type': 'message'})
    assert hub.group_count() == 0


def test_discard_removes_every_membership():
    hub = Hub()
    connection = _connection(1)
    hub.join('user:1', connection)
    hub.join('conversation:1', connection)
    hub.join('conversation:2', connection)
    assert hub.connection_count() == 1

    hub.discard(connection)
    assert hub.connection_count() == 0
    assert hub.group_count() == 0


def test_dead_connection_is_dropped_on_broadcast():
    hub = Hub()
    alive, dead = _connection(1), _connection(2)
    dead.ws.closed = True
    for connection in (alive, dead):
        hub.join('user:1', connection)
        hub.join('conversation:1', connection)

    hub.broadcast('conversation:1', {'type': 'message'})

    assert alive.ws.sent == [{'type': 'message'}]
    assert hub.members('conversation:1') == {alive}
    assert hub.members('user:1') == {alive}


def test_evict_notifies_then_empties_group():
    hub = Hub()
    connection = _connection(1)
    hub.join('user:1', connection)
    hub.join('conversation:1', connection)

    hub.evict('conversation:1', {'type': 'conversationRemoved', 'conversationId': 1})

    assert connection.ws.sent == [{'type': 'conversationRemoved', 'conversationId': 1}]
    assert hub.members('conversation:1') == set()
    assert hub.is_member('user:1', connection)


def test_redis_disabled_without_url():
    hub = Hub('')
    assert hub.redis_enabled() is False
    assert hub._get_redis_client() is None


class FakeRedis:

    def __init__(self, fail_ping=False):
        self.published = []
        self.fail_ping = fail_ping
        self.pings = 0

    def ping(self):
        self.pings += 1
        if self.fail_ping:
            raise redis.ConnectionError('refused')

    def publish(self, channel, data):
        self.published.append((channel, data))


class FakePubSub:
    """Replays scripted pubsub items, then stops the hub."""

    def __init__(self, hub, items, fail_subscribe=False):
        self.hub = hub
        self.items = list(items)
        self.fail_subscribe = fail_subscribe
        self.closed = False

    def subscribe(self, channel):
        if self.fail_subscribe:
            raise redis.ConnectionError('refused')

    def get_message(self, timeout=None):
        if self.items:
            return self.items.pop(0)
        self.hub.stop()
        return None

    def close(self):
        self.closed = True


def test_subscribed_hub_publishes_instead_of_delivering(monkeypatch):
    hub = Hub('redis://localhost:6379/0')
    fake = FakeRedis()
    monkeypatch.setattr(hub, '_get_redis_client', lambda: fake)
    hub._subscribed.set()
    connection = _connection(1)
    hub.join('conversation:1', connection)

    hub.broadcast('conversation:1', {'type': 'message'})

    [(channel, data)] = fake.published
    assert channel == 'duochat:groups'
    assert json.loads(data) == {'key': 'conversation:1', 'frame': {'type': 'message'}}
    # Delivery happens when the subscriber hands the envelope back
    assert connection.ws.sent == []


def test_unsubscribed_hub_publishes_and_delivers_locally(monkeypatch):
    hub = Hub('redis://localhost:6379/0')
    fake = FakeRedis()
    monkeypatch.setattr(hub, '_get_redis_client', lambda: fake)
    connection = _connection(1)
    hub.join('user:1', connection)

    hub.broadcast('user:1', {'type': 'friendUpdate'})

    assert len(fake.published) == 1
    assert connection.ws.sent == [{'type': 'friendUpdate'}]


def test_failed_connect_is_not_retried_immediately(monkeypatch):
    hub = Hub('redis://localhost:6379/0')
    fake = FakeRedis(fail_ping=True)
    monkeypatch.setattr(hub, '_connect', lambda: fake)
    connection = _connection(1)
    hub.join('user:1', connection)

    hub.broadcast('user:1', {'type': 'friendUpdate'})
    hub.broadcast('user:1', {'type': 'friendUpdate'})

    assert fake.pings == 1
    assert len(connection.ws.sent) == 2


def test_malformed_envelope_is_skipped():
    hub = Hub('redis://localhost:6379/0')
    connection = _connection(1)
    hub.join('conversation:1', connection)

    hub._handle_envelope(b'not json')
    hub._handle_envelope(json.dumps({'frame': {'type': 'message'}}))
    hub._handle_envelope(json.dumps({'key': 'conversation:1', 'frame': {'type': 'message'}}))

    assert connection.ws.sent == [{'type': 'message'}]


def test_subscriber_reconnects_after_redis_error(monkeypatch):
    monkeypatch.setattr(hub_module, 'REDIS_RETRY_MIN', 0)
    hub = Hub('redis://localhost:6379/0')
    connection = _connection(1)
    hub.join('conversation:1', connection)
    envelope = json.dumps({'key': 'conversation:1', 'frame': {'type': 'message'}, 'evict': False})
    pubsubs = [
        FakePubSub(hub, [], fail_subscribe=True),
        FakePubSub(hub, [
            {'type': 'subscribe', 'data': 1},
            {'type': 'message', 'data': envelope},
        ]),
    ]
    clients = iter(SimpleNamespace(pubsub=lambda p=p: p) for p in pubsubs)
    monkeypatch.setattr(hub, '_connect', lambda: next(clients))

    hub._listen()

    assert connection.ws.sent == [{'type': 'message'}]
    assert all(p.closed for p in pubsubs)
    assert not hub._subscribed.is_set()


def test_start_without_redis_is_a_noop():
    hub = Hub('')
    assert hub.start(timeout=0) is False
    assert hub._subscriber is None
