"""
Metadata service
Resolves the caller's credential, builds a BigQuery client and delegates to a metadata backend
"""

import time
from typing import List, Optional

import structlog
from google.auth.credentials import Credentials
from google.auth.exceptions import GoogleAuthError
from google.cloud import bigquery

from .clients import MetadataClient, get_client_class
from .config import Settings
from .credentials import Session, SessionCredentialStore
from .exceptions import ConfigurationError, MetadataFetchError
from .models import Dataset, Field, SchemaCapabilities, Table

logger = structlog.get_logger()


class MetadataService:
    """
    Stateless orchestration of metadata reads.

    Every call loads credentials and constructs a fresh client, so a key uploaded
    mid-session is used on the very next request. Nothing is cached here.
    """

    def __init__(
        self,
        settings: Settings,
        credential_store: SessionCredentialStore,
        backend: str = "api",
        default_key_path: Optional[str] = None,
    ):
        self.settings = settings
        self.credential_store = credential_store
        self.backend = backend
        self.default_key_path = default_key_path
        self._client_class = get_client_class(backend)

    @property
    def capabilities(self) -> SchemaCapabilities:
        return self._client_class.capabilities

    def _resolve_project(self, credentials: Credentials) -> str:
        project_id = self.settings.gcp_project_id or getattr(credentials, "project_id", None)
        if not project_id:
            raise ConfigurationError("No GCP project configured and the credential does not name one")
        return project_id

    def get_client(self, session: Optional[Session] = None) -> MetadataClient:
        """Build a metadata client bound to the session's (or the default) credential"""
        start_time = time.time()

        try:
            credentials = self.credential_store.load(session, self.default_key_path)
        except (GoogleAuthError, OSError, ValueError) as e:
            logger.error("Could not load credentials", backend=self.backend, error=str(e))
            raise MetadataFetchError("load credentials", str(e)) from e
        credentials_ms = (time.time() - start_time) * 1000

        project_id = self._resolve_project(credentials)
        client = bigquery.Client(
            project=project_id,
            credentials=credentials,
            location=self.settings.bigquery_location,
        )

        logger.info(
            "BigQuery client ready",
            backend=self.backend,
            project_id=project_id,
            session_aware=session is not None,
            credentials_ms=round(credentials_ms, 2),
            duration_ms=round((time.time() - start_time) * 1000, 2)
        )
        return self._client_class(client, project_id)

    def test_connection(self, session: Optional[Session] = None) -> None:
        self.get_client(session).test_connection()

    def list_datasets(self, session: Optional[Session] = None) -> List[Dataset]:
        return self.get_client(session).list_datasets()

    def list_tables(self, dataset_id: str, session: Optional[Session] = None) -> List[Table]:
        return self.get_client(session).list_tables(dataset_id)

    def get_schema(self, dataset_id: str, table_id: str, session: Optional[Session] = None) -> List[Field]:
        return self.get_client(session).get_schema(dataset_id, table_id)
