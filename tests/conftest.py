import json

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient

from bq_metadata.auth import user_cache
from bq_metadata.config import TestSettings
from bq_metadata.credentials import SessionCredentialStore
from bq_metadata.main import create_app

DEFAULT_EMAIL = "default-sa@test-project.iam.gserviceaccount.com"
UPLOADED_EMAIL = "a@p.iam.gserviceaccount.com"


@pytest.fixture(scope="session")
def private_key_pem():
    """A real RSA key so google-auth accepts the generated service account files"""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture(scope="session")
def make_key_json(private_key_pem):
    """Factory for service account key JSON"""
    def _make(email=UPLOADED_EMAIL, project_id="p", **overrides):
        info = {
            "type": "service_account",
            "project_id": project_id,
            "private_key_id": "0123456789abcdef",
            "private_key": private_key_pem,
            "client_email": email,
            "client_id": "1234567890",
            "token_uri": "https://oauth2.googleapis.com/token",
        }
        info.update(overrides)
        return json.dumps(info)
    return _make


@pytest.fixture
def default_key_path(tmp_path, make_key_json):
    path = tmp_path / "default-key.json"
    path.write_text(make_key_json(email=DEFAULT_EMAIL, project_id="test-project"))
    return str(path)


@pytest.fixture
def settings(tmp_path, default_key_path):
    return TestSettings(
        gcp_project_id="test-project",
        service_account_key_path=default_key_path,
        session_credentials_dir=str(tmp_path / "session-credentials"),
        session_secret_key="test-secret-key",
    )


@pytest.fixture
def store(settings):
    return SessionCredentialStore(settings.session_credentials_dir)


@pytest.fixture
def app(settings):
    user_cache.clear()
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
