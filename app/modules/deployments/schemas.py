from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, Dict
from datetime import datetime


class DeploymentRecord(BaseModel):
    id: int
    owner_id: str
    application_name: str
    resource_name: str = ""
    resource_url: str = ""
    deploy_status: str = "preparing"
    deploy_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def has_resource(self) -> bool:
        return bool(self.resource_name)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PrepareRequest(_CamelModel):
    app_name: Optional[str] = None


class PrepareResponse(_CamelModel):
    resource_name: str
    resource_url: str


class PushRequest(_CamelModel):
    app_name: Optional[str] = None
    archive: Optional[str] = None  # base64-encoded tar.gz
    env_vars: Optional[Dict[str, str]] = None


class PushResponse(_CamelModel):
    status: str


class StatusResponse(_CamelModel):
    status: str
    url: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class LogsResponse(_CamelModel):
    build_log: Optional[str] = None
    service_logs: Optional[str] = None
