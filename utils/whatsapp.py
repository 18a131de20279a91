from __future__ import annotations

import base64
import enum
import io
import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

import qrcode
import requests


logger = logging.getLogger(__name__)

WHATSAPP_BRIDGE_URL = os.getenv("WHATSAPP_BRIDGE_URL", "").rstrip("/")
WHATSAPP_BRIDGE_TOKEN = os.getenv("WHATSAPP_BRIDGE_TOKEN")
WHATSAPP_TIMEOUT_SECONDS = float(os.getenv("WHATSAPP_TIMEOUT_SECONDS", "45"))

# Bridge answers these while the linked device is logged out or still syncing.
_NOT_CONNECTED_STATUSES = {409, 503}
_BAD_NUMBER_STATUSES = {400, 404, 422}


class DeliveryFailure(str, enum.Enum):
    DISCONNECTED = "disconnected"
    INVALID_NUMBER = "invalid_number"
    OTHER = "other"


class DeliveryError(Exception):
    def __init__(self, reason: DeliveryFailure, detail: str = ""):
        super().__init__(detail or reason.value)
        self.reason = reason
        self.detail = detail


@dataclass(frozen=True)
class PairingState:
    connected: bool
    qr_data_url: Optional[str] = None


def mask_phone(phone: str) -> str:
    digits = "".join(ch for ch in str(phone) if ch.isdigit())
    if len(digits) < 7:
        return digits
    return digits[:3] + "****" + digits[-4:]


def phone_to_jid(phone: str) -> Optional[str]:
    """+963912345678 -> 963912345678@s.whatsapp.net"""
    digits = re.sub(r"\D", "", str(phone or ""))
    if not digits:
        return None
    return f"{digits}@s.whatsapp.net"


def qr_to_data_url(payload: str, *, box_size: int = 10, border: int = 2) -> str:
    """Render a raw pairing payload as a base64 PNG data URL (~300px wide)."""
    qr = qrcode.QRCode(box_size=box_size, border=border)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image()
    buf = io.BytesIO()
    img.save(buf)
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class WhatsAppClient:
    """
    Thin client for a WhatsApp Web bridge (a linked-device session that
    exposes a small REST API).

    Endpoints used:
      - POST {base}/messages  {"jid": ..., "text": ...}
      - GET  {base}/status    -> {"connected": bool, "qr": str | null}
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = WHATSAPP_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"accept": "application/json"})
        if token:
            self.session.headers.update({"authorization": f"Bearer {token}"})

    def send_message(self, phone: str, text: str) -> None:
        jid = phone_to_jid(phone)
        if not jid:
            raise DeliveryError(DeliveryFailure.INVALID_NUMBER, "Invalid phone number")

        try:
            resp = self.session.post(
                f"{self.base_url}/messages",
                json={"jid": jid, "text": text},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise DeliveryError(DeliveryFailure.DISCONNECTED, str(exc)) from exc
        except requests.RequestException as exc:
            raise DeliveryError(DeliveryFailure.OTHER, str(exc)) from exc

        if resp.status_code < 300:
            logger.info("WhatsApp message queued for %s", mask_phone(phone))
            return
        detail = f"bridge returned {resp.status_code}: {resp.text[:200]}"
        if resp.status_code in _NOT_CONNECTED_STATUSES:
            raise DeliveryError(DeliveryFailure.DISCONNECTED, detail)
        if resp.status_code in _BAD_NUMBER_STATUSES:
            raise DeliveryError(DeliveryFailure.INVALID_NUMBER, detail)
        raise DeliveryError(DeliveryFailure.OTHER, detail)

    def get_pairing_state(self) -> PairingState:
        try:
            resp = self.session.get(f"{self.base_url}/status", timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json() or {}
        except (requests.RequestException, ValueError):
            logger.warning("WhatsApp bridge status unavailable", exc_info=True)
            return PairingState(connected=False)

        if data.get("connected"):
            return PairingState(connected=True)
        raw_qr = data.get("qr")
        if not raw_qr:
            return PairingState(connected=False)
        return PairingState(connected=False, qr_data_url=qr_to_data_url(str(raw_qr)))

    def get_raw_qr(self) -> Optional[str]:
        """Raw pairing payload, for terminal rendering. None once connected."""
        try:
            resp = self.session.get(f"{self.base_url}/status", timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json() or {}
        except (requests.RequestException, ValueError) as exc:
            raise DeliveryError(DeliveryFailure.DISCONNECTED, f"bridge status unavailable: {exc}") from exc
        if data.get("connected"):
            return None
        return data.get("qr") or None


def init_messaging_client() -> Optional[WhatsAppClient]:
    """
    Build the WhatsApp client once at startup. Returns None when the bridge is
    not configured or the client cannot be created, so the rest of the app
    keeps working without it.
    """
    if not WHATSAPP_BRIDGE_URL:
        logger.warning("WHATSAPP_BRIDGE_URL is not set; OTP delivery is disabled")
        return None
    try:
        return WhatsAppClient(WHATSAPP_BRIDGE_URL, token=WHATSAPP_BRIDGE_TOKEN)
    except Exception:
        logger.exception("Failed to initialise WhatsApp client")
        return None
