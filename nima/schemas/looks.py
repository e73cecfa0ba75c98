# =========================================================
# FILE: /nima/schemas/looks.py
# =========================================================

from typing import List, Optional
from pydantic import BaseModel, Field, field_validator


class CreateLookRequest(BaseModel):
    item_ids: List[str] = Field(default_factory=list)
    occasion: Optional[str] = None

    @field_validator("occasion")
    @classmethod
    def strip_occasion(cls, v: Optional[str]):
        if v is None:
            return None
        v = v.strip()
        return v or None


class CreateLookResult(BaseModel):
    success: bool
    look_id: Optional[str] = None
    public_id: Optional[str] = None
    error: Optional[str] = None


class ActionResult(BaseModel):
    success: bool
    error: Optional[str] = None


class GenerationStatus(BaseModel):
    status: str  # pending | processing | completed | failed
    error_message: Optional[str] = None
    image_url: Optional[str] = None


class VisibilityRequest(BaseModel):
    is_public: bool
    shared_with_friends: bool


class LookResponse(BaseModel):
    id: str
    public_id: str
    item_ids: List[str]
    total_price: int
    currency: str
    name: Optional[str] = None
    style_tags: List[str] = Field(default_factory=list)
    occasion: Optional[str] = None
    generation_status: str
    curation_status: str
    creation_source: str
    original_look_id: Optional[str] = None
    is_public: bool
    shared_with_friends: bool


class TryOnRequest(BaseModel):
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None


class TryOnResult(BaseModel):
    success: bool
    try_on_id: Optional[str] = None
    error: Optional[str] = None


class TryOnStatus(BaseModel):
    try_on_id: str
    item_id: str
    status: str  # pending | processing | completed | failed
    error_message: Optional[str] = None
    image_url: Optional[str] = None
