"""Conversation directory.

All "the conversation between X and Y" lookups go through `find_between`,
which never assumes which column holds which participant.
"""

from sqlalchemy import and_, case, or_

from duochat.extensions import db
from duochat.models import Conversation, User, isoformat_utc


def pair_filter(a, b):
    return or_(
        and_(Conversation.user_a == a, Conversation.user_b == b),
        and_(Conversation.user_a == b, Conversation.user_b == a),
    )


def find_between(a, b):
    return Conversation.query.filter(pair_filter(a, b)).first()


def get_for_participant(conversation_id, user_id):
    """Return the conversation if `user_id` takes part in it, else None.

    Always read from the store: a friendship can be removed while the
    caller's connection is still open.
    """
    return Conversation.query.filter(
        Conversation.id == conversation_id,
        or_(Conversation.user_a == user_id, Conversation.user_b == user_id),
    ).first()


def list_for_user(user_id):
    other_id = case((Conversation.user_a == user_id, Conversation.user_b), else_=Conversation.user_a)
    rows = (
        db.session.query(Conversation, User)
        .join(User, User.id == other_id)
        .filter(or_(Conversation.user_a == user_id, Conversation.user_b == user_id))
        .order_by(Conversation.created_at.desc(), Conversation.id.desc())
        .all()
    )
    return [{
        'conversationId': conversation.id,
        'otherUserId': other.id,
        'otherUserName': other.name,
        'otherUserEmail': other.email,
        'createdAt': isoformat_utc(conversation.created_at),
    } for conversation, other in rows]
