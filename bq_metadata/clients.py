"""
Metadata client adapters
Two interchangeable ways of reading BigQuery metadata: the native API and INFORMATION_SCHEMA over DB-API
"""

import functools
import re
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime
from typing import Any, Dict, List, Optional, Type

import structlog
from google.cloud import bigquery
from google.cloud.bigquery import dbapi

from .exceptions import BigQueryAPIException, InvalidIdentifierError, MetadataFetchError
from .models import Dataset, Field, SchemaCapabilities, Table

logger = structlog.get_logger()

# Placeholder when a listing does not say what kind of table it is
DEFAULT_TABLE_TYPE = "TABLE"

_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.:_-]*$")
_DATASET_ID_RE = re.compile(r"^[A-Za-z0-9_]{1,1024}$")


def _epoch_millis(value: Any) -> Optional[int]:
    """Normalize a datetime or millisecond string from the API to epoch ms"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    return int(value)


def _wrap_errors(operation: str):
    """Turn any failure of the wrapped call into a single MetadataFetchError"""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return func(self, *args, **kwargs)
            except BigQueryAPIException:
                raise
            except Exception as e:
                logger.error(
                    "Metadata operation failed",
                    backend=self.name,
                    operation=operation,
                    project_id=self.project_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise MetadataFetchError(operation, str(e)) from e
        return wrapper
    return decorator


class MetadataClient(ABC):
    """Reads dataset, table and schema metadata for one project"""

    name: str = ""
    capabilities: SchemaCapabilities

    def __init__(self, client: bigquery.Client, project_id: str):
        self.client = client
        self.project_id = project_id

    @abstractmethod
    def test_connection(self) -> None:
        """Raise if BigQuery cannot be reached with the bound credentials"""

    @abstractmethod
    def list_datasets(self) -> List[Dataset]:
        ...

    @abstractmethod
    def list_tables(self, dataset_id: str) -> List[Table]:
        ...

    @abstractmethod
    def get_schema(self, dataset_id: str, table_id: str) -> List[Field]:
        ...


class ApiMetadataClient(MetadataClient):
    """Metadata straight from the BigQuery REST API"""

    name = "api"
    capabilities = SchemaCapabilities(
        backend="api", fidelity="full", repeated_mode=True, descriptions=True
    )

    @_wrap_errors("test connection")
    def test_connection(self) -> None:
        # First page is enough to prove auth and network work
        next(iter(self.client.list_datasets(project=self.project_id, max_results=1)), None)

    @_wrap_errors("list datasets")
    def list_datasets(self) -> List[Dataset]:
        datasets = []
        for item in self.client.list_datasets(project=self.project_id):
            # List items only carry a subset of the dataset resource
            properties: Dict[str, Any] = item._properties
            datasets.append(Dataset(
                dataset_id=item.dataset_id,
                project_id=self.project_id,
                friendly_name=item.friendly_name,
                description=properties.get("description"),
                location=properties.get("location"),
                creation_time=_epoch_millis(properties.get("creationTime")),
            ))
        logger.info("Listed datasets", backend=self.name, project_id=self.project_id, count=len(datasets))
        return datasets

    @_wrap_errors("list tables")
    def list_tables(self, dataset_id: str) -> List[Table]:
        dataset_ref = bigquery.DatasetReference(self.project_id, dataset_id)
        tables = []
        for item in self.client.list_tables(dataset_ref):
            tables.append(Table(
                table_id=item.table_id,
                dataset_id=dataset_id,
                project_id=self.project_id,
                friendly_name=item.friendly_name,
                type=item.table_type or DEFAULT_TABLE_TYPE,
                creation_time=_epoch_millis(item.created),
            ))
        logger.info(
            "Listed tables",
            backend=self.name,
            project_id=self.project_id,
            dataset_id=dataset_id,
            count=len(tables)
        )
        return tables

    @_wrap_errors("get table schema")
    def get_schema(self, dataset_id: str, table_id: str) -> List[Field]:
        table_ref = bigquery.DatasetReference(self.project_id, dataset_id).table(table_id)
        table = self.client.get_table(table_ref)
        if not table.schema:
            raise MetadataFetchError("get table schema", f"table {dataset_id}.{table_id} has no schema")

        fields = [
            Field(
                name=schema_field.name,
                type=schema_field.field_type,
                mode=schema_field.mode or "NULLABLE",
                description=schema_field.description,
            )
            for schema_field in table.schema
        ]
        logger.info(
            "Fetched table schema",
            backend=self.name,
            table=f"{self.project_id}.{dataset_id}.{table_id}",
            field_count=len(fields)
        )
        return fields


class SqlMetadataClient(MetadataClient):
    """
    Metadata from INFORMATION_SCHEMA views through the BigQuery DB-API driver.

    Dataset listings carry no description/location/creation time, and column
    listings cannot express REPEATED mode or descriptions; ``capabilities``
    advertises the reduced fidelity.
    """

    name = "sql"
    capabilities = SchemaCapabilities(
        backend="sql", fidelity="reduced", repeated_mode=False, descriptions=False
    )

    def _project(self) -> str:
        if not _PROJECT_ID_RE.match(self.project_id or ""):
            raise InvalidIdentifierError("project", self.project_id)
        return self.project_id

    @staticmethod
    def _dataset(dataset_id: str) -> str:
        if not _DATASET_ID_RE.match(dataset_id):
            raise InvalidIdentifierError("dataset", dataset_id)
        return dataset_id

    def _query(self, sql: str, parameters: Optional[Dict[str, Any]] = None) -> List[Any]:
        logger.debug("Executing metadata query", backend=self.name, sql=sql)
        connection = dbapi.connect(client=self.client, prefer_bqstorage_client=False)
        with closing(connection), closing(connection.cursor()) as cursor:
            cursor.execute(sql, parameters)
            return list(cursor.fetchall())

    @_wrap_errors("test connection")
    def test_connection(self) -> None:
        self._query("SELECT 1")

    @_wrap_errors("list datasets")
    def list_datasets(self) -> List[Dataset]:
        sql = (
            "SELECT schema_name, catalog_name "
            f"FROM `{self._project()}.INFORMATION_SCHEMA.SCHEMATA` "
            "ORDER BY schema_name"
        )
        datasets = [
            Dataset(dataset_id=row[0], project_id=self.project_id, friendly_name=row[0])
            for row in self._query(sql)
        ]
        logger.info("Listed datasets", backend=self.name, project_id=self.project_id, count=len(datasets))
        return datasets

    @_wrap_errors("list tables")
    def list_tables(self, dataset_id: str) -> List[Table]:
        sql = (
            "SELECT table_name, table_type, creation_time "
            f"FROM `{self._project()}.{self._dataset(dataset_id)}.INFORMATION_SCHEMA.TABLES` "
            "ORDER BY table_name"
        )
        tables = [
            Table(
                table_id=row[0],
                dataset_id=dataset_id,
                project_id=self.project_id,
                type=row[1] or DEFAULT_TABLE_TYPE,
                creation_time=_epoch_millis(row[2]),
            )
            for row in self._query(sql)
        ]
        logger.info(
            "Listed tables",
            backend=self.name,
            project_id=self.project_id,
            dataset_id=dataset_id,
            count=len(tables)
        )
        return tables

    @_wrap_errors("get table schema")
    def get_schema(self, dataset_id: str, table_id: str) -> List[Field]:
        sql = (
            "SELECT column_name, data_type, is_nullable "
            f"FROM `{self._project()}.{self._dataset(dataset_id)}.INFORMATION_SCHEMA.COLUMNS` "
            "WHERE table_name = %(table_name)s "
            "ORDER BY ordinal_position"
        )
        rows = self._query(sql, {"table_name": table_id})
        if not rows:
            raise MetadataFetchError("get table schema", f"table {dataset_id}.{table_id} not found")

        fields = [
            Field(
                name=row[0],
                type=row[1],
                mode="NULLABLE" if row[2] == "YES" else "REQUIRED",
                description=None,
            )
            for row in rows
        ]
        logger.info(
            "Fetched table schema",
            backend=self.name,
            table=f"{self.project_id}.{dataset_id}.{table_id}",
            field_count=len(fields)
        )
        return fields


BACKENDS: Dict[str, Type[MetadataClient]] = {
    ApiMetadataClient.name: ApiMetadataClient,
    SqlMetadataClient.name: SqlMetadataClient,
}


def get_client_class(backend: str) -> Type[MetadataClient]:
    """Look up the adapter for a backend name"""
    try:
        return BACKENDS[backend]
    except KeyError:
        raise ValueError(f"Unknown metadata backend {backend!r}; expected one of {sorted(BACKENDS)}")
