import sqlite3

from flask_sqlalchemy import SQLAlchemy
from flask_sock import Sock
from sqlalchemy import event
from sqlalchemy.engine import Engine


db = SQLAlchemy()
sock = Sock()


@event.listens_for(Engine, 'connect')
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE and FK checks unless asked per connection
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()
