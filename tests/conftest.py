import pytest

from app.firebase_init import Readiness
from app.repositories import build_datastore
from config import Config
from tests.fake_firestore import FakeFirestoreClient


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    FIREBASE_DISABLED = True
    SOCKETIO_ASYNC_MODE = 'threading'
    LOG_LEVEL = 'WARNING'


@pytest.fixture
def firestore_client():
    return FakeFirestoreClient()


@pytest.fixture
def local_datastore(tmp_path):
    return build_datastore(Readiness(False, reason='disabled'), str(tmp_path / 'database'))


@pytest.fixture
def firestore_datastore(firestore_client):
    return build_datastore(Readiness(True, client=firestore_client), '/nonexistent')


@pytest.fixture(params=['local', 'firestore'])
def datastore(request, tmp_path):
    """The same datastore contract, once per backend."""
    if request.param == 'local':
        return build_datastore(Readiness(False), str(tmp_path / 'database'))
    return build_datastore(Readiness(True, client=FakeFirestoreClient()), '/nonexistent')


@pytest.fixture
def app(tmp_path):
    from app import create_app

    class AppConfig(TestConfig):
        DATA_DIR = str(tmp_path / 'database')

    return create_app(AppConfig)


@pytest.fixture
def client(app):
    return app.test_client()
