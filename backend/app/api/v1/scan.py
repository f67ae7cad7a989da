"""Document scan endpoints — analyze an uploaded image, save and list results."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, get_current_user
from app.core.dependencies import get_db
from app.models.account import ScanRecord
from app.schemas.scan import (
    AnalyzeDocumentRequest,
    ScanRecordCreate,
    ScanRecordListResponse,
    ScanRecordOut,
    ScanRecordResponse,
)
from app.services.ai.common.providers import ProviderNotConfiguredError
from app.services.ai.document_extract.contracts import ScanLimitReached, UpstreamModelError
from app.services.ai.document_extract.service import analyze_document
from app.services.ai.document_extract.templates import normalize_document_type

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_SCAN_LIST = 200


@router.post(
    "/analyze-document",
    summary="Classify and extract structured data from a document image",
    responses={403: {"description": "Scan limit reached"}, 500: {"description": "Model call failed"}},
)
async def analyze_document_endpoint(
    payload: AnalyzeDocumentRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    try:
        outcome = await analyze_document(
            db,
            current_user.id,
            payload.image_base64,
            payload.mime_type,
        )
    except ScanLimitReached as exc:
        return JSONResponse(status_code=403, content=exc.to_payload())
    except UpstreamModelError as exc:
        return JSONResponse(status_code=500, content={"error": exc.message})
    except ProviderNotConfiguredError:
        return JSONResponse(status_code=500, content={"error": "AI provider is not configured"})

    return outcome.data


def _record_out(record: ScanRecord) -> ScanRecordOut:
    return ScanRecordOut(
        id=str(record.id),
        user=record.user_id,
        document_type=record.document_type,
        data=record.data,
        created_at=record.created_at,
    )


@router.get("/scans", response_model=ScanRecordListResponse)
def list_scans(
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    rows = (
        db.execute(
            select(ScanRecord)
            .where(ScanRecord.user_id == current_user.id)
            .order_by(ScanRecord.created_at.desc())
            .limit(MAX_SCAN_LIST)
        )
        .scalars()
        .all()
    )
    return ScanRecordListResponse(data=[_record_out(r) for r in rows])


@router.post("/scans", response_model=ScanRecordResponse, status_code=201)
def save_scan(
    payload: ScanRecordCreate,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    document_type = payload.document_type
    if document_type is None and isinstance(payload.data, dict):
        document_type = payload.data.get("documentType")

    record = ScanRecord(
        user_id=current_user.id,
        document_type=normalize_document_type(document_type).value,
        data=payload.data,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Scan saved for user=%s type=%s", current_user.id, record.document_type)
    return ScanRecordResponse(data=_record_out(record))
