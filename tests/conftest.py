import itertools
import json
from collections import deque
from types import SimpleNamespace

import pytest
from simple_websocket import ConnectionClosed
from werkzeug.security import generate_password_hash

from duochat import create_app
from duochat.auth import issue_token
from duochat.extensions import db
from duochat.hub import Connection, get_hub
from duochat.models import User


class FakeWebSocket:
    """Stands in for a flask-sock socket: scripted receive(), recorded send()."""

    def __init__(self, frames=()):
        self.incoming = deque(f if isinstance(f, str) else json.dumps(f) for f in frames)
        self.sent = []
        self.closed = False

    def receive(self, timeout=None):
        if self.incoming:
            return self.incoming.popleft()
        return None

    def send(self, data):
        if self.closed:
            raise ConnectionClosed()
        self.sent.append(json.loads(data))

    def frames(self, frame_type):
        return [frame for frame in self.sent if frame['type'] == frame_type]


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'SECRET_KEY': 'test-secret',
        'REDIS_URL': '',
        'LOG_LEVEL': 'DEBUG',
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def hub(app):
    return get_hub()


_emails = itertools.count(1)


@pytest.fixture
def make_user(app):
    """Create a user row and return a detached snapshot with a bearer token."""

    def factory(name=None, email=None, password='secret-pw'):
        n = next(_emails)
        user = User(
            name=name or f'User {n}',
            email=email or f'user{n}@example.com',
            password_hash=generate_password_hash(password),
        )
        db.session.add(user)
        db.session.commit()
        snapshot = SimpleNamespace(id=user.id, name=user.name, email=user.email)
        snapshot.token = issue_token(snapshot.id, snapshot.email)
        snapshot.headers = {'Authorization': f'Bearer {snapshot.token}'}
        return snapshot

    return factory


@pytest.fixture
def setup_alice(make_user):
    return make_user(name='Alice', email='a@x.com')


@pytest.fixture
def setup_bob(make_user):
    return make_user(name='Bob', email='b@x.com')


@pytest.fixture
def setup_carol(make_user):
    return make_user(name='Carol', email='c@x.com')


@pytest.fixture
def connect(hub):
    """Admit a fake connection for a user, as the websocket handshake would."""
    from duochat.realtime import admit

    def factory(user):
        connection = Connection(FakeWebSocket(), user.id)
        admit(connection)
        return connection

    return factory


@pytest.fixture
def setup_friends(setup_alice, setup_bob):
    """Alice and Bob with an accepted request and their conversation id."""
    from duochat import relationships

    friend_request = relationships.create_or_renew_request(setup_alice.id, setup_bob.email)
    result = relationships.respond(setup_bob.id, friend_request.id, 'accept')
    return SimpleNamespace(alice=setup_alice, bob=setup_bob, conversation_id=result['conversationId'])
