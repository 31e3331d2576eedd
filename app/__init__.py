import logging
from flask import Flask
from flask_socketio import SocketIO
from config import Config

socketio = SocketIO()


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    # Decide once whether Firestore is usable, then build every repository on it
    from app.firebase_init import init_firebase
    from app.repositories import build_datastore
    readiness = init_firebase(app.config)
    datastore = build_datastore(readiness, app.config['DATA_DIR'])
    app.extensions['readiness'] = readiness
    app.extensions['datastore'] = datastore

    from app.events import push_notification
    from app.services.notifications import NotificationService
    app.extensions['notifications'] = NotificationService(datastore, relay=push_notification)

    socketio.init_app(
        app,
        cors_allowed_origins=_allowed_origins(app.config.get('CORS_ALLOWED_ORIGINS', '')),
        async_mode=app.config.get('SOCKETIO_ASYNC_MODE', 'eventlet')
    )

    from app.routes import main
    app.register_blueprint(main.bp)

    from app import events  # noqa: F401

    logging.getLogger(__name__).info('Datastore backend: %s', datastore.backend)
    return app


def _allowed_origins(value):
    """Comma separated origins; None lets Socket.IO apply its same-origin default."""
    origins = [origin.strip() for origin in (value or '').split(',') if origin.strip()]
    return origins or None
