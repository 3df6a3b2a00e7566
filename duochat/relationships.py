"""Friend request state machine.

Per ordered (requester, receiver) pair: none -> pending -> accepted|rejected,
rejected -> pending on a re-request, accepted -> none on removal. Accepting
guarantees exactly one conversation for the unordered pair.
"""

import logging

from sqlalchemy import and_, func, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from duochat import conversations
from duochat.errors import (
    InvalidOperationError,
    NotFoundError,
    ServerError,
    ValidationError,
    coerce_id,
)
from duochat.extensions import db
from duochat.hub import conversation_key, get_hub, user_key
from duochat.models import (
    ACCEPTED,
    PENDING,
    REJECTED,
    Conversation,
    FriendRequest,
    Message,
    User,
    isoformat_utc,
    utcnow,
)


logger = logging.getLogger(__name__)

ACCEPT = 'accept'
REJECT = 'reject'

ACCEPT_ATTEMPTS = 2

_UPSERTS = {
    'postgresql': pg_insert,
    'sqlite': sqlite_insert,
}


def find_user_by_email(email):
    return User.query.filter(func.lower(User.email) == email.strip().lower()).first()


def notify_friend_update(*user_ids):
    hub = get_hub()
    for user_id in set(user_ids):
        hub.broadcast(user_key(user_id), {'type': 'friendUpdate'})


def _pair_requests(a, b):
    return FriendRequest.query.filter(or_(
        and_(FriendRequest.requester_id == a, FriendRequest.receiver_id == b),
        and_(FriendRequest.requester_id == b, FriendRequest.receiver_id == a),
    ))


def _upsert_pending(requester_id, receiver_id):
    dialect = db.engine.dialect.name
    insert = _UPSERTS.get(dialect)
    if insert is None:
        raise ServerError(f'Unsupported database dialect: {dialect}')
    now = utcnow()
    stmt = insert(FriendRequest.__table__).values(
        requester_id=requester_id,
        receiver_id=receiver_id,
        status=PENDING,
        created_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=['requester_id', 'receiver_id'],
        set_={'status': PENDING, 'created_at': now},
    )
    db.session.execute(stmt)


def create_or_renew_request(requester_id, receiver_email):
    """Insert a pending request, or force an existing one back to pending."""
    if not isinstance(receiver_email, str) or not receiver_email.strip():
        raise ValidationError('receiverEmail required')

    receiver = find_user_by_email(receiver_email)
    if receiver is None:
        raise NotFoundError('User not found')
    receiver_id = receiver.id
    if receiver_id == requester_id:
        raise InvalidOperationError('Cannot friend yourself')

    try:
        _upsert_pending(requester_id, receiver_id)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    friend_request = FriendRequest.query.filter_by(
        requester_id=requester_id, receiver_id=receiver_id
    ).one()
    logger.info('friend request %s: %s -> %s pending', friend_request.id, requester_id, receiver_id)
    notify_friend_update(requester_id, receiver_id)
    return friend_request


def _ensure_conversation(requester_id, receiver_id):
    conversation = conversations.find_between(requester_id, receiver_id)
    if conversation is not None:
        return conversation
    try:
        with db.session.begin_nested():
            conversation = Conversation(user_a=requester_id, user_b=receiver_id, created_at=utcnow())
            db.session.add(conversation)
    except IntegrityError:
        # Lost the race on ux_conversations_user_pair; the winner's row is the one
        logger.info('conversation for %s/%s created concurrently, reusing it', requester_id, receiver_id)
        conversation = conversations.find_between(requester_id, receiver_id)
        if conversation is None:
            raise
    return conversation


def _accept(request_id, requester_id, receiver_id):
    for attempt in range(1, ACCEPT_ATTEMPTS + 1):
        try:
            FriendRequest.query.filter_by(id=request_id).update(
                {'status': ACCEPTED}, synchronize_session=False
            )
            conversation_id = _ensure_conversation(requester_id, receiver_id).id
            db.session.commit()
            return conversation_id
        except SQLAlchemyError:
            db.session.rollback()
            logger.warning(
                'accept of request %s failed (attempt %d/%d)',
                request_id, attempt, ACCEPT_ATTEMPTS, exc_info=True,
            )
    raise ServerError('Could not accept friend request')


def respond(responder_id, request_id, action):
    if request_id in (None, '') or not action:
        raise ValidationError('requestId and action required')
    if action not in (ACCEPT, REJECT):
        raise ValidationError('invalid action', reason='InvalidAction')
    request_id = coerce_id(request_id, 'requestId')

    # Only the receiver may answer; anybody else sees the same NotFound
    friend_request = FriendRequest.query.filter_by(id=request_id, receiver_id=responder_id).first()
    if friend_request is None:
        raise NotFoundError('friend request not found')
    requester_id = friend_request.requester_id
    status = friend_request.status

    if action == REJECT:
        if status == ACCEPTED:
            raise InvalidOperationError('Request already accepted')
        if status != REJECTED:
            friend_request.status = REJECTED
            try:
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                raise
        logger.info('friend request %s rejected by %s', request_id, responder_id)
        notify_friend_update(requester_id, responder_id)
        return {'ok': True, 'status': REJECTED}

    if status == REJECTED:
        raise InvalidOperationError('Request was rejected')
    conversation_id = _accept(request_id, requester_id, responder_id)
    logger.info(
        'friend request %s accepted by %s, conversation %s', request_id, responder_id, conversation_id
    )
    notify_friend_update(requester_id, responder_id)
    return {'ok': True, 'status': ACCEPTED, 'conversationId': conversation_id}


def remove(user_id, other_user_id):
    """Forget the friendship between two users. Safe to repeat."""
    other_user_id = coerce_id(other_user_id, 'otherUserId')
    conversation_id = None
    try:
        _pair_requests(user_id, other_user_id).delete(synchronize_session=False)
        conversation = conversations.find_between(user_id, other_user_id)
        if conversation is not None:
            conversation_id = conversation.id
            # Children first, the FK cascade is not relied upon
            Message.query.filter_by(conversation_id=conversation_id).delete(synchronize_session=False)
            Conversation.query.filter_by(id=conversation_id).delete(synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    if conversation_id is not None:
        logger.info('friendship %s/%s removed with conversation %s', user_id, other_user_id, conversation_id)
        get_hub().evict(
            conversation_key(conversation_id),
            {'type': 'conversationRemoved', 'conversationId': conversation_id},
        )
    notify_friend_update(user_id, other_user_id)
    return {'success': True}


def list_incoming(user_id):
    rows = (
        db.session.query(FriendRequest, User)
        .join(User, User.id == FriendRequest.requester_id)
        .filter(FriendRequest.receiver_id == user_id, FriendRequest.status == PENDING)
        .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
        .all()
    )
    return [{
        'id': friend_request.id,
        'requesterId': requester.id,
        'name': requester.name,
        'email': requester.email,
        'createdAt': isoformat_utc(friend_request.created_at),
    } for friend_request, requester in rows]


def list_outgoing(user_id):
    rows = (
        db.session.query(FriendRequest, User)
        .join(User, User.id == FriendRequest.receiver_id)
        .filter(FriendRequest.requester_id == user_id, FriendRequest.status == PENDING)
        .order_by(FriendRequest.created_at.desc(), FriendRequest.id.desc())
        .all()
    )
    return [{
        'id': friend_request.id,
        'receiverId': receiver.id,
        'name': receiver.name,
        'email': receiver.email,
        'createdAt': isoformat_utc(friend_request.created_at),
    } for friend_request, receiver in rows]
