"""Two-pass document scan: entitlement gate, classify, extract, parse, meter.

Usage is charged once the extraction call has returned, whether or not its
output parses; a failed model call charges nothing. No automatic retries.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime

from sqlalchemy.orm import Session

from app.services import entitlement_service
from app.services.audit_service import create_audit_log

from ..common import router as ai_router
from ..common.audit import log_ai_run
from ..common.json_tools import JsonParseError, extract_json, parse_model_json
from ..common.providers import BaseProvider, ImageInput, ProviderResult
from .contracts import (
    PARSE_FAILED_MESSAGE,
    DocumentType,
    ExtractionOutcome,
    ScanLimitReached,
    UpstreamModelError,
)
from .templates import ExtractionTemplate, get_template, normalize_document_type, valid_types

logger = logging.getLogger(__name__)

CLASSIFY_SYSTEM_PROMPT = (
    "You are a document classification AI. Look at the uploaded image and decide which kind "
    "of document it is."
)

CLASSIFY_USER_PROMPT = (
    "Classify this document as exactly one of: {types}.\n"
    'Return ONLY a JSON object of the form {{"documentType": "<type>"}}. '
    "No markdown, no code fences, no extra text."
)

EXTRACT_OUTPUT_DIRECTIVE = "Only return valid JSON. No markdown, no code fences, no extra text."

EXTRACT_USER_PROMPT = "Analyze this document image and extract all structured data as JSON."

_TYPE_KEYS = ("documentType", "document_type", "type")


def build_classification_prompt() -> str:
    return CLASSIFY_USER_PROMPT.format(types=" | ".join(t.value for t in valid_types()))


def build_extraction_instruction(template: ExtractionTemplate) -> str:
    return (
        f"{template.instruction_text}\n\n"
        "Return ONLY valid JSON in this exact structure:\n\n"
        f"{template.schema_text}\n\n"
        f"{EXTRACT_OUTPUT_DIRECTIVE}"
    )


def parse_classification(raw_text: str) -> DocumentType:
    """Read the detected type from a classification reply; ``OTHER`` on any problem."""
    parsed = extract_json(raw_text)
    if not isinstance(parsed, dict):
        return DocumentType.OTHER
    for key in _TYPE_KEYS:
        if key in parsed:
            return normalize_document_type(parsed[key])
    return DocumentType.OTHER


def parse_extraction(raw_text: str) -> tuple[object, bool]:
    """Return ``(data, parsed_ok)``; unparseable output degrades to a raw-text payload."""
    try:
        return parse_model_json(raw_text), True
    except JsonParseError:
        return {"rawText": raw_text, "error": PARSE_FAILED_MESSAGE}, False


async def _call_model(
    provider: BaseProvider,
    *,
    stage: str,
    prompt: str,
    system_prompt: str,
    image: ImageInput,
    model: str,
    temperature: float,
    max_tokens: int | None,
    timeout_seconds: float,
) -> ProviderResult:
    try:
        return await provider.generate(
            prompt,
            system_prompt=system_prompt,
            image=image,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=timeout_seconds,
        )
    except Exception as exc:
        message = str(exc) or exc.__class__.__name__
        logger.warning("AI %s call failed (%s): %s", stage, provider.name, message)
        raise UpstreamModelError(message, stage=stage) from exc


def _gate(db: Session, user_id: str, *, now: datetime | None) -> None:
    entitlement = entitlement_service.get_or_create(db, user_id)
    entitlement = entitlement_service.rollover_if_due(db, entitlement, now=now)
    decision = entitlement_service.check_permission(entitlement)
    if not decision.allowed:
        create_audit_log(
            db,
            entity_type="entitlement",
            entity_id=user_id,
            action="SCAN_LIMIT_REACHED",
            old_value=None,
            new_value={
                "plan": decision.plan,
                "scans_used": decision.scans_used,
                "scans_limit": decision.scans_limit,
            },
            actor_type="USER",
            actor_id=user_id,
        )
        db.commit()
        raise ScanLimitReached(decision.plan, decision.scans_used, decision.scans_limit)
    # Release the row before the slow model calls.
    db.commit()


async def analyze_document(
    db: Session,
    user_id: str,
    image_base64: str,
    mime_type: str,
    *,
    now: datetime | None = None,
    override_provider: str | None = None,
    override_model: str | None = None,
) -> ExtractionOutcome:
    """Run one scan for *user_id*.

    Raises ``ScanLimitReached`` before any model call when the entitlement is
    exhausted, and ``UpstreamModelError`` when either model call fails.
    """
    _gate(db, user_id, now=now)

    image = ImageInput(data_base64=image_base64, mime_type=mime_type)
    t0 = time.monotonic()

    classify_config = ai_router.resolve(
        "classify",
        override_provider=override_provider,
        override_model=override_model,
    )
    extract_config = ai_router.resolve(
        "extract",
        override_provider=override_provider,
        override_model=override_model,
    )

    classify_prompt = build_classification_prompt()
    try:
        classify_result = await _call_model(
            classify_config.provider,
            stage="classify",
            prompt=classify_prompt,
            system_prompt=CLASSIFY_SYSTEM_PROMPT,
            image=image,
            model=classify_config.model,
            temperature=classify_config.temperature,
            max_tokens=classify_config.max_tokens,
            timeout_seconds=classify_config.timeout_seconds,
        )
        document_type = parse_classification(classify_result.raw_text)
        log_ai_run(
            db,
            scope="classify",
            provider_result=classify_result,
            prompt_text=classify_prompt,
            parsed_output={"document_type": document_type.value},
            actor_id=user_id,
        )

        template = get_template(document_type)
        instruction = build_extraction_instruction(template)
        extract_result = await _call_model(
            extract_config.provider,
            stage="extract",
            prompt=EXTRACT_USER_PROMPT,
            system_prompt=instruction,
            image=image,
            model=extract_config.model,
            temperature=extract_config.temperature,
            max_tokens=extract_config.max_tokens,
            timeout_seconds=extract_config.timeout_seconds,
        )
    except UpstreamModelError as exc:
        db.rollback()
        create_audit_log(
            db,
            entity_type="ai",
            entity_id=user_id,
            action="AI_UPSTREAM_ERROR",
            old_value=None,
            new_value=None,
            actor_type="SYSTEM",
            actor_id=user_id,
            metadata={"stage": exc.stage, "error": exc.message[:500]},
        )
        db.commit()
        raise

    # The model was paid for; meter it before anything else can fail.
    entitlement_service.record_usage(db, user_id)
    data, parsed_ok = parse_extraction(extract_result.raw_text)
    if not parsed_ok:
        logger.warning(
            "Extraction output for user=%s type=%s was not valid JSON",
            user_id,
            document_type.value,
        )

    log_ai_run(
        db,
        scope="extract",
        provider_result=extract_result,
        prompt_text=instruction,
        parsed_output={"document_type": document_type.value, "parsed": parsed_ok},
        actor_id=user_id,
    )
    db.commit()

    total_ms = (time.monotonic() - t0) * 1000
    return ExtractionOutcome(
        document_type=document_type,
        data=data,
        parsed=parsed_ok,
        provider=extract_result.provider,
        model=extract_result.model,
        latency_ms=round(total_ms, 2),
    )
