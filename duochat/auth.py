import logging
from datetime import datetime, timezone
from functools import wraps

import jwt
from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from duochat.errors import AuthError, ConflictError, ValidationError
from duochat.extensions import db
from duochat.models import User
from duochat.relationships import find_user_by_email


logger = logging.getLogger(__name__)

JWT_ALGORITHM = 'HS256'

bp = Blueprint('auth', __name__)


def issue_token(user_id, email):
    payload = {
        'userId': user_id,
        'email': email,
        'exp': datetime.now(timezone.utc) + current_app.config['TOKEN_EXPIRY'],
    }
    return jwt.encode(payload, current_app.config['SECRET_KEY'], algorithm=JWT_ALGORITHM)


def verify_token(token):
    try:
        payload = jwt.decode(token, current_app.config['SECRET_KEY'], algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError:
        return None
    if not isinstance(payload.get('userId'), int):
        return None
    return payload


def bearer_token():
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return header.split(' ', 1)[1].strip() or None
    return None


def authenticate(token):
    """Bind the request to the token's user or raise AuthError."""
    if not token:
        raise AuthError('No token')
    payload = verify_token(token)
    if payload is None:
        raise AuthError('Invalid token')
    g.user_id = payload['userId']
    g.user_email = payload.get('email')
    return g.user_id


def require_auth(f):

    @wraps(f)
    def wrapper(*args, **kwargs):
        authenticate(bearer_token())
        return f(*args, **kwargs)
    return wrapper


def _required_fields(data, *names):
    values = [data.get(name) for name in names]
    if not all(isinstance(value, str) and value.strip() for value in values):
        raise ValidationError('All fields required')
    return values


@bp.route('/signup', methods=['POST'])
def signup():
    data = request.get_json(silent=True) or {}
    name, email, password = _required_fields(data, 'name', 'email', 'password')
    email = email.strip()

    if find_user_by_email(email) is not None:
        raise ConflictError('Email already exists')

    user = User(name=name.strip(), email=email, password_hash=generate_password_hash(password))
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('Email already exists')

    logger.info('signup user=%s', user.id)
    return jsonify({'user': user.to_dict(), 'token': issue_token(user.id, user.email)})


@bp.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    email, password = _required_fields(data, 'email', 'password')

    user = find_user_by_email(email)
    if user is None or not check_password_hash(user.password_hash, password):
        raise AuthError('Invalid credentials')

    return jsonify({'user': user.to_dict(), 'token': issue_token(user.id, user.email)})
