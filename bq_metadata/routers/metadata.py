"""
Metadata Router - dataset, table and schema endpoints
One router instance is mounted per backend (native API and INFORMATION_SCHEMA)
"""

import time
from typing import List

import structlog
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse

from ..auth import get_session
from ..credentials import Session
from ..exceptions import MissingParameterError, ValidationError
from ..models import Dataset, Field, SchemaCapabilities, Table
from ..service import MetadataService

logger = structlog.get_logger()


def require_param(name: str, value: str) -> str:
    """Reject missing or whitespace-only path parameters"""
    if value is None or not value.strip():
        raise MissingParameterError(name)
    return value


def create_metadata_router(backend: str) -> APIRouter:
    """Build the four read endpoints bound to one metadata backend"""
    router = APIRouter()

    def get_service(request: Request) -> MetadataService:
        return request.app.state.metadata_services[backend]

    @router.get("/test", response_class=PlainTextResponse)
    def test_connection(
        service: MetadataService = Depends(get_service),
        session: Session = Depends(get_session)
    ):
        """Check that BigQuery is reachable with the session's credential"""
        start_time = time.time()
        try:
            service.test_connection(session)
        except Exception as e:
            logger.error(
                "Connection test failed",
                backend=backend,
                duration_ms=round((time.time() - start_time) * 1000, 2),
                exc_info=True
            )
            message = getattr(e, "detail", None) or str(e)
            return PlainTextResponse(f"Connection failed: {message}", status_code=500)

        logger.info(
            "Connection test succeeded",
            backend=backend,
            duration_ms=round((time.time() - start_time) * 1000, 2)
        )
        return "Connection successful!"

    @router.get("/capabilities", response_model=SchemaCapabilities)
    def get_capabilities(service: MetadataService = Depends(get_service)):
        """Describe how complete this backend's schema information is"""
        return service.capabilities

    @router.get("/datasets", response_model=List[Dataset])
    def list_datasets(
        service: MetadataService = Depends(get_service),
        session: Session = Depends(get_session)
    ):
        """List datasets in the configured project"""
        start_time = time.time()
        try:
            datasets = service.list_datasets(session)
        except Exception:
            logger.error(
                "Failed to list datasets",
                backend=backend,
                duration_ms=round((time.time() - start_time) * 1000, 2),
                exc_info=True
            )
            return Response(status_code=500)

        logger.info(
            "Datasets returned",
            backend=backend,
            count=len(datasets),
            dataset_ids=[dataset.dataset_id for dataset in datasets[:10]],
            duration_ms=round((time.time() - start_time) * 1000, 2)
        )
        return datasets

    @router.get("/datasets/{dataset_id}/tables", response_model=List[Table])
    def list_tables(
        dataset_id: str,
        service: MetadataService = Depends(get_service),
        session: Session = Depends(get_session)
    ):
        """List tables in a specific dataset"""
        require_param("datasetId", dataset_id)

        start_time = time.time()
        try:
            tables = service.list_tables(dataset_id, session)
        except ValidationError:
            raise
        except Exception:
            logger.error(
                "Failed to list tables",
                backend=backend,
                dataset_id=dataset_id,
                duration_ms=round((time.time() - start_time) * 1000, 2),
                exc_info=True
            )
            return Response(status_code=500)

        logger.info(
            "Tables returned",
            backend=backend,
            dataset_id=dataset_id,
            count=len(tables),
            duration_ms=round((time.time() - start_time) * 1000, 2)
        )
        return tables

    @router.get("/datasets/{dataset_id}/tables/{table_id}/schema", response_model=List[Field])
    def get_table_schema(
        dataset_id: str,
        table_id: str,
        response: Response,
        service: MetadataService = Depends(get_service),
        session: Session = Depends(get_session)
    ):
        """Get the top-level columns of a table"""
        require_param("datasetId", dataset_id)
        require_param("tableId", table_id)

        start_time = time.time()
        try:
            fields = service.get_schema(dataset_id, table_id, session)
        except ValidationError:
            raise
        except Exception:
            logger.error(
                "Failed to get table schema",
                backend=backend,
                table=f"{dataset_id}.{table_id}",
                duration_ms=round((time.time() - start_time) * 1000, 2),
                exc_info=True
            )
            return Response(status_code=500)

        response.headers["X-Schema-Fidelity"] = service.capabilities.fidelity
        logger.info(
            "Schema returned",
            backend=backend,
            table=f"{dataset_id}.{table_id}",
            field_count=len(fields),
            duration_ms=round((time.time() - start_time) * 1000, 2)
        )
        return fields

    return router
