import datetime as dt
from typing import List, Optional

from pydantic import BaseModel, Field

from .common import TimeRange
from .job_orders import JobTask, Part


class AppointmentCreate(BaseModel):
    plate_number: str = Field(min_length=1, max_length=30)
    time_range: TimeRange
    date: dt.date
    assigned_technician: str
    service_advisor: Optional[str] = None


class AppointmentUpdate(BaseModel):
    plate_number: Optional[str] = Field(default=None, min_length=1, max_length=30)
    time_range: Optional[TimeRange] = None
    date: Optional[dt.date] = None
    assigned_technician: Optional[str] = None
    service_advisor: Optional[str] = None
    no_show: Optional[bool] = None


class AppointmentConversion(BaseModel):
    """Fields a job order needs beyond what the appointment already holds"""
    job_number: str = Field(min_length=1, max_length=50)
    vin: str = Field(min_length=1, max_length=50)
    time_range: Optional[TimeRange] = None
    service_advisor: Optional[str] = None
    job_list: List[JobTask] = []
    parts: List[Part] = []
    is_important: bool = False
