from typing import Optional

from pydantic import BaseModel, Field

from ..models.enums import BugPriority, BugStatus


class BugReportCreate(BaseModel):
    subject: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    priority: BugPriority = BugPriority.MEDIUM


class BugReportUpdate(BaseModel):
    status: Optional[BugStatus] = None
    priority: Optional[BugPriority] = None
    admin_response: Optional[str] = None
