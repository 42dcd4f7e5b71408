from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from service_dispatch.core.enums import ServiceType


class CreateProviderRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    service_type: str


class ProviderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    service_type: ServiceType
    is_available: bool
    created_at: datetime
