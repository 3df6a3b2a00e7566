from datetime import datetime, timezone

from sqlalchemy import text

from duochat.extensions import db


PENDING = 'pending'
ACCEPTED = 'accepted'
REJECTED = 'rejected'

TOMBSTONE = '[message deleted]'


def utcnow():
    return datetime.now(timezone.utc)


def isoformat_utc(value):
    # SQLite hands timestamps back naive; they were written as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class User(db.Model):

    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.Text, nullable=False)
    email = db.Column(db.Text, nullable=False, unique=True)
    password_hash = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'email': self.email}


class FriendRequest(db.Model):

    __tablename__ = 'friend_requests'
    __table_args__ = (
        db.UniqueConstraint('requester_id', 'receiver_id', name='uq_friend_requests_pair'),
        db.CheckConstraint('requester_id <> receiver_id', name='ck_friend_requests_not_self'),
    )

    id = db.Column(db.Integer, primary_key=True)
    requester_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    receiver_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=PENDING)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)


class Conversation(db.Model):
    """One 1:1 channel. `user_a`/`user_b` keep the roles they were created
    with; uniqueness of the unordered pair lives in `ux_conversations_user_pair`.
    """

    __tablename__ = 'conversations'

    id = db.Column(db.Integer, primary_key=True)
    user_a = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    user_b = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def has_participant(self, user_id):
        return user_id in (self.user_a, self.user_b)

    def other_participant(self, user_id):
        return self.user_b if self.user_a == user_id else self.user_a


class Message(db.Model):

    __tablename__ = 'messages'
    __table_args__ = (
        db.Index('idx_messages_conv_created', 'conversation_id', 'created_at'),
    )

    # BIGINT does not autoincrement on SQLite, INTEGER PRIMARY KEY does
    id = db.Column(db.BigInteger().with_variant(db.Integer, 'sqlite'), primary_key=True)
    conversation_id = db.Column(
        db.Integer, db.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False
    )
    sender_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    content = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    deleted = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            'id': self.id,
            'conversationId': self.conversation_id,
            'senderId': self.sender_id,
            'content': self.content,
            'createdAt': isoformat_utc(self.created_at),
            'deleted': bool(self.deleted),
        }


PAIR_INDEX_DDL = {
    'postgresql': (
        'CREATE UNIQUE INDEX IF NOT EXISTS ux_conversations_user_pair '
        'ON conversations (LEAST(user_a, user_b), GREATEST(user_a, user_b))'
    ),
    'sqlite': (
        'CREATE UNIQUE INDEX IF NOT EXISTS ux_conversations_user_pair '
        'ON conversations (MIN(user_a, user_b), MAX(user_a, user_b))'
    ),
}


def init_db():
    """Create missing tables and the unordered-pair index on conversations."""
    db.create_all()
    ddl = PAIR_INDEX_DDL.get(db.engine.dialect.name)
    if ddl is None:
        raise RuntimeError(f'Unsupported database dialect: {db.engine.dialect.name}')
    with db.engine.begin() as connection:
        connection.execute(text(ddl))
