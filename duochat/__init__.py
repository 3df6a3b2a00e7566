import logging
import os

from flask import Flask, jsonify
from flask_cors import CORS
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError

from duochat import auth, config, diagnostics, realtime, routes
from duochat.errors import ChatError, ServerError
from duochat.extensions import db, sock
from duochat.hub import Hub
from duochat.models import init_db


logger = logging.getLogger(__name__)


def _ensure_sqlite_dir(uri):
    url = make_url(uri)
    if url.get_backend_name() == 'sqlite' and url.database and url.database != ':memory:':
        os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)


def register_error_handlers(app):

    @app.errorhandler(ChatError)
    def handle_chat_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_store_error(exc):
        db.session.rollback()
        logger.exception('store failure')
        return jsonify(ServerError().to_dict()), 500


def create_app(overrides=None):
    """Build the application. A store that cannot be initialised is fatal."""
    app = Flask(__name__)
    app.config.update(config.from_environ())
    if overrides:
        app.config.update(overrides)

    diagnostics.configure_logging(app.config['LOG_LEVEL'])
    _ensure_sqlite_dir(app.config['SQLALCHEMY_DATABASE_URI'])

    db.init_app(app)
    sock.init_app(app)
    CORS(app, origins=app.config['CORS_ORIGINS'])
    hub = Hub(app.config['REDIS_URL'])
    hub.start()
    app.extensions['duochat.hub'] = hub

    register_error_handlers(app)
    app.register_blueprint(auth.bp)
    app.register_blueprint(routes.bp)
    app.register_blueprint(realtime.bp)
    if app.config['DIAGNOSTICS_ENABLED']:
        app.register_blueprint(diagnostics.bp)

    with app.app_context():
        init_db()
    logger.info('DB ready (%s)', make_url(app.config['SQLALCHEMY_DATABASE_URI']).get_backend_name())
    return app
