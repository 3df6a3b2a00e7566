"""Websocket endpoint.

The handshake is authenticated before the upgrade: a missing or bad token
gets a plain 401 and no socket. An admitted connection is always placed in
its own `user:<id>` group; conversation groups are joined on request and
re-authorized against the store every time.

Frames are JSON objects with a `type` field. Errors go back to the
originating connection only and never close it.
"""

import json
import logging

from flask import Blueprint, g, request
from sqlalchemy.exc import SQLAlchemyError

from duochat import conversations, messages
from duochat.auth import authenticate, bearer_token
from duochat.errors import AuthorizationError, ChatError, ServerError, ValidationError, coerce_id
from duochat.extensions import db, sock
from duochat.hub import Connection, conversation_key, get_hub, user_key


logger = logging.getLogger(__name__)

bp = Blueprint('realtime', __name__)


@bp.before_request
def authenticate_handshake():
    # `token` query parameter first (browsers cannot set headers on a websocket)
    authenticate(request.args.get('token') or bearer_token())


@sock.route('/ws', bp=bp)
def ws_handler(ws):
    serve(ws, g.user_id)


def admit(connection):
    hub = get_hub()
    hub.join(user_key(connection.user_id), connection)
    logger.info(
        'ws_connect user=%s conn=%s connections_in_process=%d',
        connection.user_id, connection.id, hub.connection_count(),
    )
    connection.send({'type': 'connected', 'userId': connection.user_id})


def serve(ws, user_id):
    connection = Connection(ws, user_id)
    admit(connection)
    try:
        while True:
            raw = ws.receive()
            if not raw:
                break
            dispatch(connection, raw)
    finally:
        hub = get_hub()
        hub.discard(connection)
        logger.info(
            'ws_disconnect user=%s conn=%s connections_in_process=%d',
            user_id, connection.id, hub.connection_count(),
        )


def _conversation_id(data):
    return coerce_id(data.get('conversationId'), 'conversationId')


def handle_join(connection, data):
    conversation_id = _conversation_id(data)
    if conversations.get_for_participant(conversation_id, connection.user_id) is None:
        raise AuthorizationError('not in conversation')
    get_hub().join(conversation_key(conversation_id), connection)
    connection.send({'type': 'joined', 'conversationId': conversation_id})


def handle_leave(connection, data):
    conversation_id = _conversation_id(data)
    get_hub().leave(conversation_key(conversation_id), connection)
    connection.send({'type': 'left', 'conversationId': conversation_id})


def handle_send_message(connection, data):
    content = data.get('content')
    if not data.get('conversationId') or not isinstance(content, str) or not content.strip():
        raise ValidationError('invalid payload', reason='InvalidPayload')
    message = messages.send(data['conversationId'], connection.user_id, content)
    client_id = data.get('clientId')
    if client_id is not None:
        connection.send({'type': 'ack', 'clientId': client_id, 'message': message})


def handle_delete_message(connection, data):
    messages.delete(data.get('conversationId'), connection.user_id, data.get('messageId'))


def handle_ping(connection, data):
    connection.send({'type': 'pong'})


HANDLERS = {
    'join': handle_join,
    'leave': handle_leave,
    'sendMessage': handle_send_message,
    'deleteMessage': handle_delete_message,
    'ping': handle_ping,
}


def dispatch(connection, raw):
    try:
        data = json.loads(raw)
    except ValueError:
        connection.send_error(ValidationError('Invalid JSON'))
        return
    if not isinstance(data, dict):
        connection.send_error(ValidationError('Frame must be a JSON object'))
        return

    handler = HANDLERS.get(data.get('type'))
    if handler is None:
        connection.send_error(ValidationError('Unknown message type'))
        return

    try:
        handler(connection, data)
    except ChatError as exc:
        connection.send_error(exc)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception('store failure handling %s for user=%s', data.get('type'), connection.user_id)
        connection.send_error(ServerError(f"{data.get('type')} failed"))
    finally:
        # Hand the pooled DB connection back between frames
        db.session.remove()
