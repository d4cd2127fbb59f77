"""
API models for content security endpoints.
"""

from typing import Optional

from pydantic import BaseModel, Field


class HtmlSanitizeRequest(BaseModel):
    html: str = Field(..., description="Untrusted HTML")


class TextSanitizeRequest(BaseModel):
    text: str = Field(..., description="Untrusted text")
    max_length: Optional[int] = Field(None, gt=0, description="Truncation limit")


class EmbedUrlRequest(BaseModel):
    url: str = Field(..., description="URL to embed")


class ContactValidationRequest(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None


class SlugRequest(BaseModel):
    text: str


class ValidationResponse(BaseModel):
    valid: bool
    error: Optional[str] = None
