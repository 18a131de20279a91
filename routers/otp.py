from __future__ import annotations

import html
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy.orm import Session

from database import get_db
from utils.otp_service import OtpStore
from utils.phone_variants import phone_variants
from utils.user_directory import (
    find_and_mark_phone_verified_by_phone_variants,
    find_current_user_from_auth_token,
    mark_phone_verified,
)
from utils.whatsapp import mask_phone


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/otp", tags=["otp"])
bearer = HTTPBearer(auto_error=False)

QR_REFRESH_SECONDS = 20


class SendIn(BaseModel):
    # Left loose so a missing or mistyped field is our 400, not a 422.
    phone: Any = None


class VerifyIn(BaseModel):
    phone: Any = None
    code: Any = None  # "123456" or 123456


def get_otp_store(request: Request) -> OtpStore:
    return request.app.state.otp_store


def _error(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def _clean_phone(phone: Any) -> Optional[str]:
    if not isinstance(phone, str) or not phone.strip():
        return None
    return phone.strip()


def _clean_code(code: Any) -> Optional[str]:
    if code is None or isinstance(code, (bool, dict, list)):
        return None
    # JSON clients may send 123456.0 for a numeric code.
    if isinstance(code, float) and code.is_integer():
        code = int(code)
    return str(code)


@router.post("/send")
def send_otp(payload: Optional[SendIn] = None, store: OtpStore = Depends(get_otp_store)):
    """Body: {"phone": "+9639xxxxxxxx"}"""
    phone = _clean_phone(payload.phone if payload else None)
    if phone is None:
        return _error("Phone number is required (phone).")

    result = store.request_code(phone)
    if not result.ok:
        return _error(result.message)
    return {"success": True, "message": "delivered"}


@router.post("/verify")
def verify_otp(
    payload: Optional[VerifyIn] = None,
    store: OtpStore = Depends(get_otp_store),
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
):
    """Body: {"phone": "+9639xxxxxxxx", "code": "123456"}"""
    phone = _clean_phone(payload.phone if payload else None)
    if phone is None:
        return _error("Phone number is required (phone).")
    code = _clean_code(payload.code)
    if code is None:
        return _error("Verification code is required (code).")

    result = store.verify_code(phone, code)
    if not result.ok:
        return _error(result.message)

    _mark_verified(db, phone, creds.credentials if creds else None)
    return {"success": True, "message": "verified"}


def _mark_verified(db: Session, phone: str, token: Optional[str]) -> None:
    # The code is already consumed; directory trouble must not turn a
    # successful verification into an error.
    try:
        user = find_current_user_from_auth_token(db, token)
        if user is not None:
            mark_phone_verified(db, user.id)
            return
        matched = find_and_mark_phone_verified_by_phone_variants(db, phone_variants(phone))
        if matched is None:
            logger.info("Verified %s but no user record matched", mask_phone(phone))
    except Exception:
        logger.exception("Could not update user record after verifying %s", mask_phone(phone))


def _page(title: str, body: str, *, refresh: bool = False) -> str:
    meta = f'<meta http-equiv="refresh" content="{QR_REFRESH_SECONDS}">' if refresh else ""
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  {meta}
  <title>{html.escape(title)}</title>
  <style>body{{font-family:Arial,sans-serif;text-align:center;padding:40px}}</style>
</head>
<body>
  <h2>{html.escape(title)}</h2>
  {body}
</body>
</html>"""


@router.get("/qr", response_class=HTMLResponse)
def pairing_qr(request: Request):
    messenger = getattr(request.app.state, "messenger", None)
    try:
        if messenger is None:
            return HTMLResponse(_page(
                "WhatsApp not configured",
                "<p>No WhatsApp bridge is configured on this server.</p>",
            ))

        state = messenger.get_pairing_state()
        if state.connected:
            return HTMLResponse(_page(
                "WhatsApp connected",
                "<p>WhatsApp is connected and ready to send verification codes.</p>",
            ))
        if state.qr_data_url:
            return HTMLResponse(_page(
                "Scan to link WhatsApp",
                f'<img src="{html.escape(state.qr_data_url, quote=True)}" alt="WhatsApp pairing QR" width="300">'
                "<p>WhatsApp &gt; Settings &gt; Linked devices &gt; Link a device</p>",
                refresh=True,
            ), headers={"Cache-Control": "no-store"})
        return HTMLResponse(_page(
            "Waiting for QR code",
            "<p>The WhatsApp bridge has not produced a pairing code yet.</p>",
            refresh=True,
        ))
    except Exception:
        logger.exception("Failed to render pairing QR page")
        return HTMLResponse(_page("Error", "<p>Could not load the WhatsApp pairing status.</p>"), status_code=500)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed JSON or a non-object body never reaches the routes above.
    logger.info("Rejected request body on %s: %s", request.url.path, exc.errors())
    return _error("Invalid request body.")
