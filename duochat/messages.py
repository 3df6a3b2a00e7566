"""Message delivery pipeline: persist, then broadcast.

The REST routes and the websocket loop both call into this module, so a
message looks the same whichever transport carried it. A broadcast is only
issued after the row is committed, which keeps per-conversation broadcast
order equal to commit order.
"""

import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from duochat import conversations
from duochat.errors import AuthorizationError, NotFoundError, ValidationError, coerce_id
from duochat.extensions import db
from duochat.hub import conversation_key, get_hub
from duochat.models import TOMBSTONE, Message, utcnow


logger = logging.getLogger(__name__)


def _require_participant(conversation_id, user_id):
    conversation = conversations.get_for_participant(conversation_id, user_id)
    if conversation is None:
        raise AuthorizationError('Not part of conversation')
    return conversation


def _page_size(limit):
    default = current_app.config['MESSAGE_PAGE_DEFAULT']
    ceiling = current_app.config['MESSAGE_PAGE_MAX']
    if limit is None or limit == '':
        return default
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        raise ValidationError('limit must be an integer')
    return max(1, min(ceiling, limit))


def _commit():
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise


def send(conversation_id, sender_id, content):
    if not isinstance(content, str) or not content.strip():
        raise ValidationError('content required', reason='InvalidPayload')
    conversation_id = coerce_id(conversation_id, 'conversationId')
    _require_participant(conversation_id, sender_id)

    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        created_at=utcnow(),
    )
    db.session.add(message)
    _commit()

    payload = message.to_dict()
    get_hub().broadcast(conversation_key(conversation_id), {'type': 'message', 'message': payload})
    return payload


def fetch(conversation_id, requester_id, limit=None):
    """Most recent messages first, at most `limit` of them."""
    conversation_id = coerce_id(conversation_id, 'conversationId')
    _require_participant(conversation_id, requester_id)
    rows = (
        Message.query.filter_by(conversation_id=conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(_page_size(limit))
        .all()
    )
    return [message.to_dict() for message in rows]


def delete(conversation_id, requester_id, message_id):
    """Tombstone a message. Repeating the call on a tombstone is a no-op."""
    conversation_id = coerce_id(conversation_id, 'conversationId')
    message_id = coerce_id(message_id, 'messageId')
    _require_participant(conversation_id, requester_id)

    message = Message.query.filter_by(id=message_id, conversation_id=conversation_id).first()
    if message is None:
        raise NotFoundError('Message not found')
    if message.sender_id != requester_id:
        raise AuthorizationError('Only the sender can delete a message')
    if message.deleted:
        return {'success': True}

    message.content = TOMBSTONE
    message.deleted = True
    _commit()

    logger.info('message %s in conversation %s deleted by %s', message_id, conversation_id, requester_id)
    get_hub().broadcast(conversation_key(conversation_id), {
        'type': 'messageDeleted',
        'conversationId': conversation_id,
        'messageId': message_id,
    })
    return {'success': True}
