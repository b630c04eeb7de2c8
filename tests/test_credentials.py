"""Tests for the session-scoped credential store"""

import json
import threading
from unittest.mock import MagicMock, patch

import pytest
from google.oauth2 import service_account

from bq_metadata.credentials import (
    NO_SESSION,
    SESSION_CREDENTIALS_KEY,
    SOURCE_DEFAULT,
    SOURCE_SESSION,
    SessionCredentialStore,
    load_default_credentials,
    parse_service_account,
)
from bq_metadata.exceptions import InvalidCredentialFormatError

from .conftest import DEFAULT_EMAIL, UPLOADED_EMAIL


class TestSessionId:
    def test_session_id_is_stable_for_a_session(self, store):
        session = {}
        first = store.session_id(session)
        second = store.session_id(session)

        assert first == second
        assert session[SESSION_CREDENTIALS_KEY] == first

    def test_sessions_get_distinct_ids(self, store):
        assert store.session_id({}) != store.session_id({})

    def test_existing_id_is_reused(self, store):
        session = {SESSION_CREDENTIALS_KEY: "existing-id"}
        assert store.session_id(session) == "existing-id"


class TestSaveAndLoad:
    def test_save_writes_file_and_returns_identity(self, store, make_key_json):
        session = {}
        key_json = make_key_json()

        saved = store.save(session, key_json)

        assert saved.email == UPLOADED_EMAIL
        assert saved.project_id == "p"
        assert saved.session_id == session[SESSION_CREDENTIALS_KEY]
        assert saved.path.endswith(f"service-account-{saved.session_id}.json")
        with open(saved.path) as handle:
            assert handle.read() == key_json

    def test_load_returns_uploaded_not_default(self, store, make_key_json, default_key_path):
        session = {}
        store.save(session, make_key_json())

        credentials = store.load(session, default_key_path)

        assert credentials.service_account_email == UPLOADED_EMAIL

    def test_load_without_upload_falls_back_to_default(self, store, default_key_path):
        credentials = store.load({}, default_key_path)
        assert credentials.service_account_email == DEFAULT_EMAIL

    def test_load_without_session_uses_default(self, store, make_key_json, default_key_path):
        store.save({}, make_key_json())
        credentials = store.load(None, default_key_path)
        assert credentials.service_account_email == DEFAULT_EMAIL

    def test_load_reads_session_file_when_cache_is_cold(self, settings, store, make_key_json, default_key_path):
        session = {}
        store.save(session, make_key_json())

        # A new store over the same directory simulates a process restart
        restarted = SessionCredentialStore(settings.session_credentials_dir)
        credentials = restarted.load(session, default_key_path)

        assert credentials.service_account_email == UPLOADED_EMAIL

    def test_reupload_replaces_previous_key(self, store, make_key_json, default_key_path):
        session = {}
        store.save(session, make_key_json(email="first@p.iam.gserviceaccount.com"))
        store.save(session, make_key_json(email="second@p.iam.gserviceaccount.com"))

        credentials = store.load(session, default_key_path)

        assert credentials.service_account_email == "second@p.iam.gserviceaccount.com"
        assert len(list(store.credentials_dir.glob("service-account-*.json"))) == 1

    def test_concurrent_uploads_leave_file_and_cache_in_agreement(self, settings, store, make_key_json,
                                                                default_key_path):
        session = {}
        store.session_id(session)
        emails = [f"writer-{n}@p.iam.gserviceaccount.com" for n in range(8)]
        start = threading.Barrier(len(emails))

        def upload(email):
            start.wait()
            store.save(session, make_key_json(email=email))

        threads = [threading.Thread(target=upload, args=(email,)) for email in emails]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        saved_path = store.credentials_path(session[SESSION_CREDENTIALS_KEY])
        on_disk = json.loads(saved_path.read_text())["client_email"]
        cached = store.load(session, default_key_path).service_account_email
        restarted = SessionCredentialStore(settings.session_credentials_dir).load(session, default_key_path)

        assert on_disk in emails
        assert cached == on_disk
        assert restarted.service_account_email == on_disk
        assert list(store.credentials_dir.glob(".upload-*")) == []

    def test_clear_during_loads_leaves_no_cached_key(self, store, make_key_json, default_key_path):
        session = {}
        store.save(session, make_key_json())
        credentials_id = session[SESSION_CREDENTIALS_KEY]

        readers = [
            threading.Thread(target=store.load, args=({SESSION_CREDENTIALS_KEY: credentials_id}, default_key_path))
            for _ in range(8)
        ]
        for thread in readers:
            thread.start()
        store.clear(session)
        for thread in readers:
            thread.join()

        assert not store.credentials_path(credentials_id).exists()
        after = store.load({SESSION_CREDENTIALS_KEY: credentials_id}, default_key_path)
        assert after.service_account_email == DEFAULT_EMAIL

    def test_default_is_reloaded_on_every_call(self, store, default_key_path, make_key_json):
        store.load({}, default_key_path)

        with open(default_key_path, "w") as handle:
            handle.write(make_key_json(email="rotated@test-project.iam.gserviceaccount.com"))

        credentials = store.load({}, default_key_path)
        assert credentials.service_account_email == "rotated@test-project.iam.gserviceaccount.com"


class TestInvalidUploads:
    @pytest.mark.parametrize(
        "payload",
        [
            "not json at all",
            "[1, 2, 3]",
            json.dumps({"type": "authorized_user", "client_id": "x", "client_secret": "y", "refresh_token": "z"}),
            json.dumps({"client_email": "x@p.iam.gserviceaccount.com"}),
        ],
    )
    def test_rejected_payloads(self, store, payload):
        with pytest.raises(InvalidCredentialFormatError) as exc_info:
            store.save({}, payload)
        assert exc_info.value.status_code == 400
        assert exc_info.value.code == "INVALID_CREDENTIAL_FORMAT"

    def test_missing_private_key_is_rejected(self, store, make_key_json):
        payload = json.loads(make_key_json())
        del payload["private_key"]

        with pytest.raises(InvalidCredentialFormatError):
            store.save({}, json.dumps(payload))

    def test_failed_upload_keeps_existing_state(self, store, make_key_json, default_key_path):
        session = {}
        good = make_key_json()
        saved = store.save(session, good)

        with pytest.raises(InvalidCredentialFormatError):
            store.save(session, json.dumps({"type": "authorized_user"}))

        with open(saved.path) as handle:
            assert handle.read() == good
        assert store.load(session, default_key_path).service_account_email == UPLOADED_EMAIL

    def test_failed_first_upload_creates_no_file(self, store):
        session = {}
        with pytest.raises(InvalidCredentialFormatError):
            store.save(session, "{broken")

        assert not store.has(session)


class TestClear:
    def test_clear_removes_file_cache_and_id(self, store, make_key_json, default_key_path):
        session = {}
        saved = store.save(session, make_key_json())

        store.clear(session)

        assert SESSION_CREDENTIALS_KEY not in session
        assert not store.has(session)
        assert store.load(session, default_key_path).service_account_email == DEFAULT_EMAIL
        assert store.session_id(session) != saved.session_id

    def test_clear_without_upload_is_harmless(self, store):
        session = {}
        store.clear(session)
        assert not store.has(session)


class TestDescribe:
    def test_describe_session_specific(self, store, make_key_json, default_key_path):
        session = {}
        store.save(session, make_key_json())

        info = store.describe(session, default_key_path)

        assert info.credentials_source == SOURCE_SESSION
        assert info.has_custom_credentials is True
        assert info.service_account_email == UPLOADED_EMAIL
        assert info.project_id == "p"

    def test_describe_default(self, store, default_key_path):
        info = store.describe({}, default_key_path)

        assert info.credentials_source == SOURCE_DEFAULT
        assert info.has_custom_credentials is False
        assert info.service_account_email == DEFAULT_EMAIL

    def test_describe_without_session(self, store, default_key_path):
        info = store.describe(None, default_key_path)
        assert info.session_id == NO_SESSION

    def test_describe_non_service_account_default(self, store):
        user_credentials = MagicMock(quota_project_id="quota-project")
        with patch("bq_metadata.credentials.google.auth.default", return_value=(user_credentials, None)):
            info = store.describe({}, None)

        assert info.service_account_email is None
        assert info.credentials_type == "MagicMock"
        assert info.project_id == "quota-project"


def test_parse_service_account_returns_credentials(make_key_json):
    credentials = parse_service_account(make_key_json())
    assert isinstance(credentials, service_account.Credentials)
    assert credentials.project_id == "p"


def test_default_credentials_use_adc_without_path():
    adc = MagicMock()
    with patch("bq_metadata.credentials.google.auth.default", return_value=(adc, "adc-project")) as mock_default:
        assert load_default_credentials(None) is adc
    mock_default.assert_called_once()
