import eventlet
eventlet.monkey_patch()

import logging
import os

from fleettrack.main import create_app, socketio

logging.basicConfig(
    level=os.environ.get('FLEETTRACK_LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s [%(name)s] %(levelname)s %(message)s'
)

app = create_app(start_tracking=True, async_mode='eventlet')


if __name__ == '__main__':
    socketio.run(app, host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))
