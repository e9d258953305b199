from pydantic import BaseModel, EmailStr
from typing import Optional


class LoginRequest(BaseModel):
    identifier: str  # username or email
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class MeResponse(BaseModel):
    id: str
    name: str
    username: str
    email: EmailStr
    role: str
    level: Optional[str] = None
