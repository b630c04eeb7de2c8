"""
Session-scoped service account credentials
Each session gets its own isolated key file and cache entry, with fallback to the process default
"""

import json
import os
import tempfile
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional

import google.auth
import structlog
from google.auth.credentials import Credentials
from google.oauth2 import service_account

from .exceptions import InvalidCredentialFormatError
from .models import CredentialInfo

logger = structlog.get_logger()

BIGQUERY_SCOPES = ["https://www.googleapis.com/auth/bigquery"]

SESSION_CREDENTIALS_KEY = "credentials_id"
NO_SESSION = "NO_SESSION"

SOURCE_SESSION = "Session-specific"
SOURCE_DEFAULT = "Default"

Session = MutableMapping[str, Any]


@dataclass(frozen=True)
class SavedCredentials:
    """Outcome of a successful upload"""
    session_id: str
    email: str
    project_id: Optional[str]
    path: str


def parse_service_account(json_text: str) -> service_account.Credentials:
    """
    Parse raw key JSON into service account credentials.

    Raises InvalidCredentialFormatError for anything that is not a well-formed
    service account key, including user (OAuth) credentials.
    """
    try:
        info = json.loads(json_text)
    except (TypeError, ValueError) as e:
        raise InvalidCredentialFormatError(f"not valid JSON ({e})") from e

    if not isinstance(info, dict):
        raise InvalidCredentialFormatError("expected a JSON object")

    key_type = info.get("type")
    if key_type != "service_account":
        raise InvalidCredentialFormatError(
            f"expected type 'service_account', got {key_type!r}"
        )

    try:
        return service_account.Credentials.from_service_account_info(info, scopes=BIGQUERY_SCOPES)
    except (ValueError, TypeError, KeyError) as e:
        raise InvalidCredentialFormatError(str(e)) from e


def load_default_credentials(default_path: Optional[str]) -> Credentials:
    """Load the process-wide credential; never cached so a replaced key file is picked up"""
    if default_path:
        credentials, _ = google.auth.load_credentials_from_file(default_path, scopes=BIGQUERY_SCOPES)
        return credentials
    credentials, _ = google.auth.default(scopes=BIGQUERY_SCOPES)
    return credentials


class SessionCredentialStore:
    """
    Maps a session to its uploaded service account key.

    The session is any mutable mapping (the Starlette session dict in the HTTP
    layer). It only ever holds an opaque credentials ID; the key itself lives in
    ``<credentials_dir>/service-account-<id>.json`` and in an in-memory cache.
    """

    def __init__(self, credentials_dir: str):
        self.credentials_dir = Path(credentials_dir)
        self.credentials_dir.mkdir(parents=True, exist_ok=True)
        self._cache: Dict[str, Credentials] = {}
        self._lock = threading.Lock()
        logger.info("Session credentials directory initialized", path=str(self.credentials_dir))

    def session_id(self, session: Session) -> str:
        """Get or create the credentials ID stored in the session"""
        credentials_id = session.get(SESSION_CREDENTIALS_KEY)
        if not credentials_id:
            credentials_id = str(uuid.uuid4())
            session[SESSION_CREDENTIALS_KEY] = credentials_id
            logger.info("Created new session credentials ID", session_id=credentials_id)
        return credentials_id

    def credentials_path(self, credentials_id: str) -> Path:
        return self.credentials_dir / f"service-account-{credentials_id}.json"

    def save(self, session: Session, json_text: str) -> SavedCredentials:
        """Validate and store a key for this session, replacing any previous one"""
        credentials = parse_service_account(json_text)

        credentials_id = self.session_id(session)
        path = self.credentials_path(credentials_id)

        fd, tmp_path = tempfile.mkstemp(dir=self.credentials_dir, prefix=".upload-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json_text)
            # File and cache change together so concurrent uploads cannot split them
            with self._lock:
                os.replace(tmp_path, path)
                self._cache[credentials_id] = credentials
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        logger.info(
            "Session credentials saved",
            session_id=credentials_id,
            service_account_email=credentials.service_account_email,
            project_id=credentials.project_id,
            path=str(path)
        )
        return SavedCredentials(
            session_id=credentials_id,
            email=credentials.service_account_email,
            project_id=credentials.project_id,
            path=str(path),
        )

    def load(self, session: Optional[Session], default_path: Optional[str]) -> Credentials:
        """
        Credentials for the session: cache first, then the session file, then the
        process default. Passing ``session=None`` always yields the default.
        """
        if session is None:
            logger.debug("No session, using default credentials")
            return load_default_credentials(default_path)

        credentials_id = self.session_id(session)
        path = self.credentials_path(credentials_id)

        with self._lock:
            cached = self._cache.get(credentials_id)
            if cached is not None:
                logger.debug("Using cached session credentials", session_id=credentials_id)
                return cached

            if path.exists():
                logger.info("Loading session-specific credentials", session_id=credentials_id, path=str(path))
                credentials, _ = google.auth.load_credentials_from_file(str(path), scopes=BIGQUERY_SCOPES)
                self._cache[credentials_id] = credentials
                return credentials

        logger.info("Using default service account", session_id=credentials_id)
        return load_default_credentials(default_path)

    def has(self, session: Session) -> bool:
        """True iff a session-specific key file exists"""
        return self.credentials_path(self.session_id(session)).exists()

    def clear(self, session: Session) -> None:
        """Forget the session's key: cache entry, file and the ID itself"""
        credentials_id = self.session_id(session)
        path = self.credentials_path(credentials_id)

        with self._lock:
            self._cache.pop(credentials_id, None)
            if path.exists():
                path.unlink()
                logger.info("Deleted session credentials", session_id=credentials_id, path=str(path))

        session.pop(SESSION_CREDENTIALS_KEY, None)

    def describe(self, session: Optional[Session], default_path: Optional[str]) -> CredentialInfo:
        """Non-secret information about the credential the session would use"""
        credentials = self.load(session, default_path)
        has_custom = session is not None and self.has(session)

        info = CredentialInfo(
            session_id=self.session_id(session) if session is not None else NO_SESSION,
            has_custom_credentials=has_custom,
            credentials_source=SOURCE_SESSION if has_custom else SOURCE_DEFAULT,
        )
        if isinstance(credentials, service_account.Credentials):
            info.service_account_email = credentials.service_account_email
            info.project_id = credentials.project_id
        else:
            info.credentials_type = type(credentials).__name__
            info.project_id = getattr(credentials, "quota_project_id", None)
        return info
