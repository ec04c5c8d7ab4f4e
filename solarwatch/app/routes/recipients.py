from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from ..config import Settings
from ..registry import (
    DEFAULT_FROM_MAIL,
    DEFAULT_FROM_NAME,
    clean_emails,
    load_recipients,
    read_document,
)
from ..schemas import RecipientsResponse
from ..security import app_settings, require_admin
from ..services.records import StorageError, save_json_record

router = APIRouter(prefix="/api/v1", tags=["recipients"])

logger = logging.getLogger("solarwatch.recipients")


def replace_recipients(settings: Settings, emails: object) -> list[str]:
    """Replace the alert e-mail list, keeping sender fields. Returns the cleaned list."""

    if not isinstance(emails, list):
        raise HTTPException(status_code=400, detail="emails must be array")

    clean = list(clean_emails(emails, validate=True))
    doc = read_document(settings.recipients_path)
    doc["emails"] = clean
    doc.setdefault("from_name", DEFAULT_FROM_NAME)
    doc.setdefault("from_mail", DEFAULT_FROM_MAIL)
    try:
        save_json_record(settings.recipients_path, doc)
    except StorageError:
        logger.exception("Failed to write recipient list")
        raise HTTPException(status_code=500, detail="write failed")

    logger.info("Recipient list replaced", extra={"fields": {"count": len(clean)}})
    return clean


@router.get("/recipients", response_model=RecipientsResponse)
def get_recipients(request: Request) -> RecipientsResponse:
    return RecipientsResponse(emails=list(load_recipients(app_settings(request)).emails))


@router.put("/recipients", response_model=RecipientsResponse, dependencies=[Depends(require_admin)])
async def put_recipients(request: Request) -> RecipientsResponse:
    """Replace the list. Non-string, blank and invalid addresses are dropped, not rejected."""

    try:
        payload = json.loads(await request.body() or b"null")
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="invalid json")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="invalid json")

    clean = replace_recipients(app_settings(request), payload.get("emails"))
    return RecipientsResponse(emails=clean)
