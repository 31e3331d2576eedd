"""
Firebase initialisation and the startup readiness check.

``init_firebase`` runs once when the app is created. It returns a
``Readiness`` value saying whether Firestore can be used; the datastore is
built from that value and never re-checks it. Nothing here raises: any
failure leaves the app on the local JSON files.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import firebase_admin
from firebase_admin import credentials, firestore
from tenacity import Retrying, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

PROBE_COLLECTION = '_conn_test'
PROBE_DOCUMENT = '_ping'


@dataclass(frozen=True)
class Readiness:
    ready: bool
    client: Any = None
    reason: Optional[str] = None

    @property
    def backend(self):
        return 'firestore' if self.ready else 'local'


def _config_value(config, key, default=None):
    value = config.get(key) if config else None
    if value in (None, ''):
        value = os.environ.get(key, default)
    return value


def _as_bool(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def load_credentials(config):
    """Service-account fields first, then a credentials file. None if neither."""
    project_id = _config_value(config, 'FIREBASE_PROJECT_ID')
    private_key = _config_value(config, 'FIREBASE_PRIVATE_KEY')

    if project_id and private_key:
        private_key = private_key.replace('\\n', '\n')
        if 'BEGIN PRIVATE KEY' not in private_key:
            raise ValueError('FIREBASE_PRIVATE_KEY is not a PEM private key')
        return credentials.Certificate({
            'type': 'service_account',
            'project_id': project_id,
            'private_key_id': _config_value(config, 'FIREBASE_PRIVATE_KEY_ID', ''),
            'private_key': private_key,
            'client_email': _config_value(config, 'FIREBASE_CLIENT_EMAIL', ''),
            'client_id': _config_value(config, 'FIREBASE_CLIENT_ID', ''),
            'auth_uri': 'https://accounts.google.com/o/oauth2/auth',
            'token_uri': 'https://oauth2.googleapis.com/token',
            'auth_provider_x509_cert_url': 'https://www.googleapis.com/oauth2/v1/certs',
            'client_x509_cert_url': _config_value(config, 'FIREBASE_CLIENT_CERT_URL', ''),
        })

    cred_path = _config_value(config, 'GOOGLE_APPLICATION_CREDENTIALS')
    if cred_path and os.path.exists(cred_path):
        return credentials.Certificate(cred_path)

    return None


def _get_or_initialize_app(cred, project_id=None):
    try:
        return firebase_admin.get_app()
    except ValueError:
        options = {'projectId': project_id} if project_id else None
        return firebase_admin.initialize_app(cred, options=options)


def probe(client, attempts=1):
    """Read the sentinel document, retrying with exponential backoff."""
    for attempt in Retrying(stop=stop_after_attempt(max(1, attempts)),
                            wait=wait_exponential(multiplier=0.5, max=4),
                            reraise=True):
        with attempt:
            client.collection(PROBE_COLLECTION).document(PROBE_DOCUMENT).get()


def init_firebase(app_config=None):
    """Initialise Firebase and decide whether Firestore is usable."""
    if _as_bool(_config_value(app_config, 'FIREBASE_DISABLED', 'false')):
        logger.info('Firebase disabled by configuration, using local JSON storage')
        return Readiness(False, reason='disabled')

    try:
        cred = load_credentials(app_config)
        if cred is None:
            logger.warning('No Firebase credentials found, using local JSON storage')
            return Readiness(False, reason='no credentials')

        _get_or_initialize_app(cred, _config_value(app_config, 'FIREBASE_PROJECT_ID'))
        client = firestore.client()

        if _as_bool(_config_value(app_config, 'FIREBASE_CONNECTIVITY_PROBE', 'true')):
            probe(client, int(_config_value(app_config, 'FIREBASE_PROBE_ATTEMPTS', 3)))
    except Exception as e:
        logger.warning('Firebase unavailable, using local JSON storage: %s', e)
        return Readiness(False, reason=str(e))

    logger.info('Firebase initialised, Firestore is ready')
    return Readiness(True, client=client)
