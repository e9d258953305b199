from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field

from ..models.enums import Role, TechnicianLevel
from .common import HHMM_PATTERN


class BreakTime(BaseModel):
    description: Optional[str] = None
    start_time: str = Field(pattern=HHMM_PATTERN)
    end_time: str = Field(pattern=HHMM_PATTERN)


class UserCreate(BaseModel):
    name: str = Field(min_length=1)
    username: Optional[str] = None  # derived from name when omitted
    email: EmailStr
    password: str = Field(min_length=6)
    role: Role
    level: Optional[TechnicianLevel] = None
    break_times: List[BreakTime] = []


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=6)
    role: Optional[Role] = None
    level: Optional[TechnicianLevel] = None
    break_times: Optional[List[BreakTime]] = None
    is_active: Optional[bool] = None


class BreakTimesUpdate(BaseModel):
    break_times: List[BreakTime]
