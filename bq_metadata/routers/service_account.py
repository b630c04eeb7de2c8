"""
Service Account Router - per-session credential management
View the active credential, upload a new key for the current session, or drop it again
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import JSONResponse
from google.auth.exceptions import GoogleAuthError

from ..auth import get_session
from ..credentials import SavedCredentials, Session, SessionCredentialStore
from ..exceptions import ValidationError
from ..models import CamelModel
from ..ratelimit import limiter, upload_rate_limit

logger = structlog.get_logger()
router = APIRouter()


REQUIRED_PERMISSIONS: Dict[str, Any] = {
    "minimum": [
        {
            "role": "roles/bigquery.metadataViewer",
            "description": "View metadata for all datasets and tables",
            "purpose": "Required to list datasets, tables, and schemas",
            "permissions": "bigquery.datasets.get, bigquery.tables.get, bigquery.tables.list",
        },
        {
            "role": "roles/bigquery.jobUser",
            "description": "Run BigQuery jobs (queries)",
            "purpose": "Required for INFORMATION_SCHEMA queries on the SQL backend",
            "permissions": "bigquery.jobs.create",
        },
    ],
    "optional": [
        {
            "role": "roles/bigquery.dataViewer",
            "description": "Read table data and metadata",
            "purpose": "Optional: only if you also query actual table data",
            "permissions": "bigquery.tables.getData",
        },
    ],
    "notRecommended": [
        {
            "role": "roles/bigquery.admin",
            "description": "Full BigQuery access",
            "purpose": "Too permissive for metadata browsing",
            "permissions": "All BigQuery permissions",
        },
    ],
}

PERMISSION_GUIDE: Dict[str, Any] = {
    "summary": "Your service account needs these permissions to work with this application",
    "minimumRoles": [
        "roles/bigquery.metadataViewer - View datasets, tables, and schemas",
        "roles/bigquery.jobUser - Run INFORMATION_SCHEMA queries",
    ],
    "howToAssign": [
        "Option 1: Use Google Cloud Console (IAM & Admin > Service Accounts)",
        "Option 2: Use gcloud CLI commands (see /api/service-account/permissions endpoint)",
    ],
    "verification": [
        "Test with: GET /api/bigquery/datasets (REST API method)",
        "Test with: GET /api/bigquery-jdbc/datasets (INFORMATION_SCHEMA method)",
    ],
}

GCLOUD_COMMANDS: Dict[str, Any] = {
    "description": "Use these commands to assign the required permissions to your service account",
    "step1": {
        "description": "Set your service account email and project ID",
        "command": 'export SERVICE_ACCOUNT_EMAIL="your-service-account@your-project.iam.gserviceaccount.com"\n'
                   'export PROJECT_ID="your-project-id"',
    },
    "step2": {
        "description": "Assign BigQuery Metadata Viewer role",
        "command": 'gcloud projects add-iam-policy-binding $PROJECT_ID \\\n'
                   '  --member="serviceAccount:$SERVICE_ACCOUNT_EMAIL" \\\n'
                   '  --role="roles/bigquery.metadataViewer"',
    },
    "step3": {
        "description": "Assign BigQuery Job User role",
        "command": 'gcloud projects add-iam-policy-binding $PROJECT_ID \\\n'
                   '  --member="serviceAccount:$SERVICE_ACCOUNT_EMAIL" \\\n'
                   '  --role="roles/bigquery.jobUser"',
    },
    "step4": {
        "description": "Verify permissions",
        "command": 'gcloud projects get-iam-policy $PROJECT_ID \\\n'
                   '  --flatten="bindings[].members" \\\n'
                   '  --filter="bindings.members:serviceAccount:$SERVICE_ACCOUNT_EMAIL"',
    },
    "optional": {
        "description": "If you need to read actual table data (not just metadata)",
        "command": 'gcloud projects add-iam-policy-binding $PROJECT_ID \\\n'
                   '  --member="serviceAccount:$SERVICE_ACCOUNT_EMAIL" \\\n'
                   '  --role="roles/bigquery.dataViewer"',
    },
}


class CredentialUpdateRequest(CamelModel):
    """Raw key JSON posted as a string field"""
    service_account_json: Optional[str] = None


def get_credential_store(request: Request) -> SessionCredentialStore:
    return request.app.state.credential_store


def get_default_key_path(request: Request) -> Optional[str]:
    return request.app.state.default_key_path


def _saved_response(saved: SavedCredentials, message: str) -> Dict[str, Any]:
    return {
        "status": "uploaded",
        "message": message,
        "serviceAccountEmail": saved.email,
        "projectId": saved.project_id,
        "sessionId": saved.session_id,
        "requiredPermissions": REQUIRED_PERMISSIONS,
    }


@router.get("/info")
def get_service_account_info(
    session: Session = Depends(get_session),
    store: SessionCredentialStore = Depends(get_credential_store),
    default_key_path: Optional[str] = Depends(get_default_key_path)
):
    """Non-sensitive information about the credential this session uses"""
    try:
        info = store.describe(session, default_key_path)
    except (GoogleAuthError, OSError, ValueError) as e:
        logger.error("Error getting service account info", error=str(e), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "error": f"Could not load credentials: {e}",
                "code": "CREDENTIALS_UNAVAILABLE",
                "requiredPermissions": REQUIRED_PERMISSIONS,
                "permissionGuide": PERMISSION_GUIDE,
            }
        )

    logger.info(
        "Service account info retrieved",
        session_id=info.session_id,
        credentials_source=info.credentials_source,
        service_account_email=info.service_account_email
    )
    return {
        "status": "active",
        **info.model_dump(by_alias=True),
        "requiredPermissions": REQUIRED_PERMISSIONS,
        "permissionGuide": PERMISSION_GUIDE,
    }


@router.post("/upload")
@limiter.limit(upload_rate_limit)
def upload_service_account_key(
    request: Request,
    file: UploadFile = File(...),
    session: Session = Depends(get_session),
    store: SessionCredentialStore = Depends(get_credential_store)
):
    """Upload a key file that applies to the current session only"""
    content = file.file.read()
    if not content:
        raise ValidationError("File is empty", code="EMPTY_FILE")

    try:
        json_text = content.decode("utf-8")
    except UnicodeDecodeError:
        raise ValidationError("File is not UTF-8 encoded JSON", code="INVALID_ENCODING")

    logger.info("Validating uploaded service account key", filename=file.filename, size=len(content))
    saved = store.save(session, json_text)
    return _saved_response(saved, "Service account uploaded successfully for your session")


@router.post("/update")
@limiter.limit(upload_rate_limit)
def update_service_account_key(
    request: Request,
    payload: CredentialUpdateRequest,
    session: Session = Depends(get_session),
    store: SessionCredentialStore = Depends(get_credential_store)
):
    """Same as upload, but the key JSON arrives in the request body"""
    json_text = payload.service_account_json
    if json_text is None or not json_text.strip():
        raise ValidationError("Missing 'serviceAccountJson' in request body", code="MISSING_PARAMETER")

    logger.info("Validating posted service account key", size=len(json_text))
    saved = store.save(session, json_text)
    return _saved_response(saved, "Service account updated successfully for your session")


@router.delete("/session")
def clear_session_credentials(
    session: Session = Depends(get_session),
    store: SessionCredentialStore = Depends(get_credential_store)
):
    """Forget the key uploaded by this session; later calls use the default again"""
    store.clear(session)
    logger.info("Session credentials cleared")
    return {
        "status": "cleared",
        "message": "Session credentials removed, the default service account is active again",
    }


@router.get("/permissions")
def get_permissions():
    """Static reference: roles the service account needs and how to grant them"""
    return {
        "requiredPermissions": REQUIRED_PERMISSIONS,
        "permissionGuide": PERMISSION_GUIDE,
        "gcloudCommands": GCLOUD_COMMANDS,
    }
