import os
import secrets
from datetime import timedelta


DEFAULT_DATA_DIR = os.path.join(os.path.dirname(__file__), 'dbs')


def _database_url(data_dir):
    url = os.environ.get('DATABASE_URL', '')
    if not url:
        db_path = os.path.join(data_dir, 'main.db').replace('\\', '/')
        return f'sqlite:///{db_path}'
    # Hosted Postgres providers still hand out the pre-1.4 scheme
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]
    return url


def from_environ():
    """Build the Flask config mapping from environment variables."""
    data_dir = os.environ.get('DATA_DIR', DEFAULT_DATA_DIR)
    return {
        'SECRET_KEY': os.environ.get('SECRET_KEY', secrets.token_urlsafe(32)),
        'DATA_DIR': data_dir,
        'SQLALCHEMY_DATABASE_URI': _database_url(data_dir),
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'REDIS_URL': os.environ.get('REDIS_URL') or '',
        'TOKEN_EXPIRY': timedelta(hours=int(os.environ.get('TOKEN_EXPIRY_HOURS', '168'))),
        'LOG_LEVEL': os.environ.get('LOG_LEVEL', 'INFO').upper(),
        'CORS_ORIGINS': os.environ.get('CORS_ORIGINS', '*'),
        'DIAGNOSTICS_ENABLED': os.environ.get('DIAGNOSTICS_ENABLED', '1') not in ('0', 'false', 'no'),
        'MESSAGE_PAGE_DEFAULT': 50,
        'MESSAGE_PAGE_MAX': 200,
    }
