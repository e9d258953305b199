from typing import Optional

from pydantic import BaseModel, Field


class MaintenanceSettingsUpdate(BaseModel):
    is_under_maintenance: Optional[bool] = None
    maintenance_message: Optional[str] = Field(default=None, min_length=1)
    api_key: Optional[str] = None
