import pytest

from app import create_app
from config import TestingConfig
from lti.nonce_store import MemoryNonceStore


@pytest.fixture
def nonce_store():
    return MemoryNonceStore()


@pytest.fixture
def app(nonce_store):
    return create_app(TestingConfig, nonce_store=nonce_store)


@pytest.fixture
def client(app):
    return app.test_client()
