import logging
import os
from app import create_app, socketio

app = create_app()

if __name__ == '__main__':
    debug = os.environ.get('FLASK_DEBUG', 'false').lower() in ('true', '1')
    port = int(os.environ.get('PORT', 5000))
    logging.getLogger(__name__).info(
        'Starting portal on port %d (%s backend)', port, app.extensions['datastore'].backend)
    socketio.run(app, host='0.0.0.0', port=port, debug=debug)
