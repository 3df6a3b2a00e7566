"""In-app log buffer and connection counters."""

import logging
import sys
from collections import deque

from flask import Blueprint, jsonify

from duochat.hub import get_hub


LOG_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'
LOG_DATEFMT = '%H:%M:%S'

bp = Blueprint('diagnostics', __name__)


class RingBufferHandler(logging.Handler):
    """Keeps the last `capacity` formatted records in memory."""

    def __init__(self, capacity=500):
        super().__init__()
        self.lines = deque(maxlen=capacity)

    def emit(self, record):
        try:
            self.lines.append(self.format(record))
        except Exception:
            self.handleError(record)


log_buffer = RingBufferHandler()


def configure_logging(level):
    logger = logging.getLogger('duochat')
    logger.setLevel(level)
    if log_buffer not in logger.handlers:
        formatter = logging.Formatter(LOG_FORMAT, LOG_DATEFMT)
        log_buffer.setFormatter(formatter)
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        logger.addHandler(log_buffer)
        logger.addHandler(stream)
    return logger


@bp.route('/api/logs', methods=['GET'])
def get_logs():
    """Lines held by the in-memory log buffer, oldest first."""
    return jsonify({'lines': list(log_buffer.lines)})


@bp.route('/api/debug', methods=['GET'])
def get_debug():
    """Connection and group counts for this worker only."""
    hub = get_hub()
    return jsonify({
        'connections_in_this_process': hub.connection_count(),
        'groups_in_this_process': hub.group_count(),
        'redis_enabled': hub.redis_enabled(),
    })
