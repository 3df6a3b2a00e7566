# Gevent must be patched first so one worker can handle WebSockets + HTTP concurrently
from gevent import monkey
monkey.patch_all()

import os

from duochat import create_app


app = create_app()


def main():
    host = os.environ.get('FLASK_HOST', '0.0.0.0')
    port = int(os.environ.get('PORT', os.environ.get('FLASK_PORT', '5000')))
    app.run(debug=False, host=host, port=port)


if __name__ == '__main__':
    main()
