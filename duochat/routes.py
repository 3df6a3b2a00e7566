from flask import Blueprint, g, jsonify, request

from duochat import conversations, messages, relationships
from duochat.auth import require_auth


bp = Blueprint('api', __name__)


def _body():
    return request.get_json(silent=True) or {}


@bp.route('/friends/request', methods=['POST'])
@require_auth
def send_friend_request():
    friend_request = relationships.create_or_renew_request(g.user_id, _body().get('receiverEmail'))
    return jsonify({'ok': True, 'requestId': friend_request.id})


@bp.route('/friends/respond', methods=['POST'])
@require_auth
def respond_to_friend_request():
    data = _body()
    return jsonify(relationships.respond(g.user_id, data.get('requestId'), data.get('action')))


@bp.route('/friends/remove', methods=['POST'])
@require_auth
def remove_friend():
    return jsonify(relationships.remove(g.user_id, _body().get('otherUserId')))


@bp.route('/friends/requests', methods=['GET'])
@require_auth
def get_incoming_requests():
    return jsonify({'requests': relationships.list_incoming(g.user_id)})


@bp.route('/friends/requests/outgoing', methods=['GET'])
@require_auth
def get_outgoing_requests():
    return jsonify({'requests': relationships.list_outgoing(g.user_id)})


@bp.route('/conversations', methods=['GET'])
@require_auth
def get_conversations():
    return jsonify({'conversations': conversations.list_for_user(g.user_id)})


@bp.route('/conversations/<int:conversation_id>/messages', methods=['GET'])
@require_auth
def get_messages(conversation_id):
    limit = request.args.get('limit')
    return jsonify({'messages': messages.fetch(conversation_id, g.user_id, limit)})


@bp.route('/conversations/<int:conversation_id>/messages', methods=['POST'])
@require_auth
def post_message(conversation_id):
    # Fallback for clients whose websocket is down; same pipeline as sendMessage
    message = messages.send(conversation_id, g.user_id, _body().get('content'))
    return jsonify({'message': message})


@bp.route('/conversations/<int:conversation_id>/messages/<int:message_id>', methods=['DELETE'])
@require_auth
def delete_message(conversation_id, message_id):
    return jsonify(messages.delete(conversation_id, g.user_id, message_id))
