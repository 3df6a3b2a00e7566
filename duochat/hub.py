"""Broadcast groups for live websocket connections.

A process-local multimap from group key (`user:<id>` or `conversation:<id>`)
to the connections currently in it. Nothing here is persisted: a restart
starts empty and clients rejoin their conversations, while every connection
is put back into its own user group when it is admitted.

With REDIS_URL set, broadcasts go through one redis channel and a subscriber
thread per process delivers them to local members, so users connected to
different workers still reach each other. While this process has no
confirmed subscription, its broadcasts are delivered locally as well.
"""

import json
import logging
import threading
import time
import uuid
from collections import defaultdict

import redis
from flask import current_app
from simple_websocket import ConnectionClosed


logger = logging.getLogger(__name__)

REDIS_CHANNEL = 'duochat:groups'
REDIS_CONNECT_TIMEOUT = 2.0
REDIS_RETRY_MIN = 0.5
REDIS_RETRY_MAX = 30.0
SUBSCRIBE_TIMEOUT = 5.0


def user_key(user_id):
    return f'user:{user_id}'


def conversation_key(conversation_id):
    return f'conversation:{conversation_id}'


def get_hub():
    return current_app.extensions['duochat.hub']


class Connection:
    """One admitted websocket bound to an authenticated user."""

    def __init__(self, ws, user_id):
        self.ws = ws
        self.user_id = user_id
        self.id = uuid.uuid4().hex[:12]
        self._send_lock = threading.Lock()

    def send(self, frame):
        with self._send_lock:
            self.ws.send(json.dumps(frame))

    def send_error(self, error):
        self.send({'type': 'error', 'message': error.message, 'reason': error.reason})

    def __repr__(self):
        return f'<Connection {self.id} user={self.user_id}>'


class Hub:

    def __init__(self, redis_url=''):
        self.redis_url = redis_url
        self._lock = threading.Lock()
        self._groups = defaultdict(set)
        self._memberships = defaultdict(set)
        self._redis = None
        self._subscriber = None
        self._retry_at = 0.0
        self._subscribed = threading.Event()
        self._stopped = threading.Event()

    def join(self, key, connection):
        with self._lock:
            self._groups[key].add(connection)
            self._memberships[connection].add(key)

    def leave(self, key, connection):
        with self._lock:
            self._remove(key, connection)

    def discard(self, connection):
        """Drop a connection from every group it joined."""
        with self._lock:
            for key in list(self._memberships.get(connection, ())):
                self._remove(key, connection)
            self._memberships.pop(connection, None)

    def _remove(self, key, connection):
        members = self._groups.get(key)
        if members is not None:
            members.discard(connection)
            if not members:
                del self._groups[key]
        keys = self._memberships.get(connection)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._memberships[connection]

    def members(self, key):
        with self._lock:
            return set(self._groups.get(key, ()))

    def is_member(self, key, connection):
        with self._lock:
            return connection in self._groups.get(key, ())

    def connection_count(self):
        with self._lock:
            return len(self._memberships)

    def group_count(self):
        with self._lock:
            return len(self._groups)

    def broadcast(self, key, frame):
        self._fan_out({'key': key, 'frame': frame})

    def evict(self, key, frame=None):
        """Send `frame` to the group, then empty it."""
        self._fan_out({'key': key, 'frame': frame, 'evict': True})

    def _fan_out(self, envelope):
        if self._subscribed.is_set():
            if self._publish(envelope):
                return
        else:
            # Other workers may be subscribed even while this one is not
            self._publish(envelope)
        self._deliver(envelope['key'], envelope.get('frame'), evict=envelope.get('evict', False))

    def _deliver(self, key, frame, evict=False):
        # Sends happen outside the lock so one slow socket cannot stall joins
        members = self.members(key)
        if frame is not None:
            for connection in members:
                try:
                    connection.send(frame)
                except (ConnectionClosed, OSError):
                    logger.info('dropping dead connection %r', connection)
                    self.discard(connection)
        if evict:
            with self._lock:
                for connection in members:
                    self._remove(key, connection)

    # -- redis fan-out -----------------------------------------------------

    def redis_enabled(self):
        return bool(self.redis_url)

    def _connect(self):
        return redis.from_url(
            self.redis_url,
            socket_connect_timeout=REDIS_CONNECT_TIMEOUT,
            socket_timeout=REDIS_CONNECT_TIMEOUT,
        )

    def _get_redis_client(self):
        """Return the publishing client, or None while redis is unreachable."""
        if not self.redis_url:
            return None
        if self._redis is None:
            if time.monotonic() < self._retry_at:
                return None
            try:
                client = self._connect()
                client.ping()
            except redis.RedisError:
                self._retry_at = time.monotonic() + REDIS_RETRY_MAX
                logger.warning('redis connect failed, delivering locally only', exc_info=True)
                return None
            self._redis = client
        return self._redis

    def _publish(self, envelope):
        client = self._get_redis_client()
        if client is None:
            return False
        try:
            client.publish(REDIS_CHANNEL, json.dumps(envelope))
        except redis.RedisError:
            logger.warning('redis publish failed for %s, delivering locally', envelope['key'], exc_info=True)
            self._redis = None
            self._retry_at = time.monotonic() + REDIS_RETRY_MIN
            return False
        return True

    def start(self, timeout=SUBSCRIBE_TIMEOUT):
        """Start the redis subscriber and wait until it is subscribed.

        Returns whether the subscription was confirmed in time. Until it is,
        broadcasts are delivered locally as well as published.
        """
        if not self.redis_url:
            return False
        with self._lock:
            if self._subscriber is None or not self._subscriber.is_alive():
                self._stopped.clear()
                self._subscriber = threading.Thread(target=self._listen, name='duochat-redis', daemon=True)
                self._subscriber.start()
        if not self._subscribed.wait(timeout):
            logger.warning('redis subscription not confirmed after %ss', timeout)
        return self._subscribed.is_set()

    def stop(self):
        self._stopped.set()

    def _listen(self):
        delay = REDIS_RETRY_MIN
        while not self._stopped.is_set():
            try:
                self._consume()
            except redis.RedisError:
                logger.warning('redis subscriber lost, retrying in %.1fs', delay, exc_info=True)
            if self._subscribed.is_set():
                delay = REDIS_RETRY_MIN
            self._subscribed.clear()
            if self._stopped.wait(delay):
                break
            delay = min(delay * 2, REDIS_RETRY_MAX)

    def _consume(self):
        pubsub = self._connect().pubsub()
        try:
            pubsub.subscribe(REDIS_CHANNEL)
            while not self._stopped.is_set():
                item = pubsub.get_message(timeout=1.0)
                if item is None:
                    continue
                if item['type'] == 'subscribe':
                    self._subscribed.set()
                    logger.info('subscribed to %s', REDIS_CHANNEL)
                elif item['type'] == 'message':
                    self._handle_envelope(item['data'])
        finally:
            pubsub.close()

    def _handle_envelope(self, data):
        try:
            envelope = json.loads(data)
            key = envelope['key']
        except (ValueError, TypeError, KeyError):
            logger.warning('ignoring malformed envelope on %s: %r', REDIS_CHANNEL, data)
            return
        self._deliver(key, envelope.get('frame'), evict=envelope.get('evict', False))
