"""
Response models shared by the metadata and service account routers
All models serialize with camelCase keys, which is what the browser client expects
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field as PydanticField
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model emitting camelCase JSON while accepting snake_case in Python"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Dataset(CamelModel):
    """A BigQuery dataset"""
    dataset_id: str
    project_id: str
    friendly_name: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    creation_time: Optional[int] = PydanticField(default=None, description="Epoch milliseconds")


class Table(CamelModel):
    """A table or view inside a dataset"""
    table_id: str
    dataset_id: str
    project_id: str
    friendly_name: Optional[str] = None
    description: Optional[str] = None
    type: str = "TABLE"
    creation_time: Optional[int] = PydanticField(default=None, description="Epoch milliseconds")
    num_rows: Optional[int] = None


class Field(CamelModel):
    """A top-level column of a table schema"""
    name: str
    type: str
    mode: str = "NULLABLE"
    description: Optional[str] = None


class SchemaCapabilities(CamelModel):
    """What a metadata backend can report about a schema"""
    backend: str
    fidelity: str
    repeated_mode: bool
    descriptions: bool


class CredentialInfo(CamelModel):
    """Non-secret description of the credential a session is using"""
    session_id: str
    has_custom_credentials: bool
    credentials_source: str
    service_account_email: Optional[str] = None
    project_id: Optional[str] = None
    credentials_type: Optional[str] = None
