import datetime as dt
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..models.enums import JobStatus, PartAvailability, TaskStatus
from .common import HHMM_PATTERN, TimeRange


class JobTask(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    description: str = Field(min_length=1)
    status: TaskStatus = TaskStatus.UNFINISHED


class Part(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    name: str = Field(min_length=1)
    availability: PartAvailability = PartAvailability.AVAILABLE


class JobOrderCreate(BaseModel):
    job_number: str = Field(min_length=1, max_length=50)
    plate_number: str = Field(min_length=1, max_length=30)
    vin: str = Field(min_length=1, max_length=50)
    assigned_technician: Optional[str] = None
    service_advisor: Optional[str] = None
    time_range: TimeRange
    date: dt.date
    job_list: List[JobTask] = []
    parts: List[Part] = []
    is_important: bool = False
    hold_customer_remarks: Optional[str] = None
    sublet_remarks: Optional[str] = None


class JobOrderUpdate(BaseModel):
    plate_number: Optional[str] = Field(default=None, min_length=1, max_length=30)
    vin: Optional[str] = Field(default=None, min_length=1, max_length=50)
    assigned_technician: Optional[str] = None
    service_advisor: Optional[str] = None
    time_range: Optional[TimeRange] = None
    actual_end_time: Optional[str] = Field(default=None, pattern=HHMM_PATTERN)
    date: Optional[dt.date] = None
    job_list: Optional[List[JobTask]] = None
    parts: Optional[List[Part]] = None
    status: Optional[JobStatus] = None
    carried_over: Optional[bool] = None
    is_important: Optional[bool] = None
    hold_customer_remarks: Optional[str] = None
    sublet_remarks: Optional[str] = None


class ReplotRequest(BaseModel):
    assigned_technician: str
    time_range: Optional[TimeRange] = None
    start_time: Optional[str] = Field(default=None, pattern=HHMM_PATTERN)
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    date: Optional[dt.date] = None

    @model_validator(mode="after")
    def _range_or_duration(self):
        if self.time_range is None and (self.start_time is None or self.duration_minutes is None):
            raise ValueError("Provide time_range, or start_time with duration_minutes")
        return self


class EndOfDayRequest(BaseModel):
    date: Optional[dt.date] = None
