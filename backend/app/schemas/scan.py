"""Scan schemas: analyze request, saved scan records."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnalyzeDocumentRequest(CamelModel):
    image_base64: str = Field(..., min_length=1)
    mime_type: str = Field(..., min_length=1, max_length=100, pattern=r"^image/[A-Za-z0-9.+-]+$")


class ScanLimitPayload(CamelModel):
    error: str = "scan_limit_reached"
    plan: str
    scans_used: int
    scans_limit: int


class ScanRecordCreate(CamelModel):
    document_type: Optional[str] = None
    data: Any


class ScanRecordOut(CamelModel):
    id: str
    user: str
    document_type: str
    data: Any
    created_at: Optional[datetime] = None


class ScanRecordResponse(BaseModel):
    success: bool = True
    data: ScanRecordOut


class ScanRecordListResponse(BaseModel):
    success: bool = True
    data: list[ScanRecordOut] = Field(default_factory=list)
