from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class UserCreate(BaseModel):
    email: str
    password: str
    name: str
    phone_number: Optional[str] = None
    primary_photo_url: Optional[str] = None


class UserLogin(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    email: str
    name: str
    phone_number: Optional[str] = None
    primary_photo_url: Optional[str] = None
    created_at: str


class TokenResponse(BaseModel):
    token: str
    user: UserResponse


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone_number: Optional[str] = None
    primary_photo_url: Optional[str] = None


class PushTokenRequest(BaseModel):
    token: str = Field(min_length=1, max_length=255)
    platform: str = "ios"
