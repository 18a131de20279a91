from __future__ import annotations

import enum
import logging
import random
import secrets
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Protocol

from utils.whatsapp import DeliveryError, DeliveryFailure, mask_phone


logger = logging.getLogger(__name__)

OTP_EXPIRY_SECONDS = 2 * 60
RATE_LIMIT_WINDOW_SECONDS = 60 * 60
RATE_LIMIT_MAX = 3

OTP_MESSAGE_TEMPLATE = (
    "Your verification code: *{code}*\n"
    "Valid for 2 minutes.\n"
    "Do not share this code with anyone."
)


class Messenger(Protocol):
    def send_message(self, phone: str, text: str) -> None: ...


class OtpError(str, enum.Enum):
    MISSING_INPUT = "missing_input"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    DELIVERY_DISCONNECTED = "delivery_disconnected"
    DELIVERY_INVALID_NUMBER = "delivery_invalid_number"
    DELIVERY_FAILED = "delivery_failed"


ERROR_MESSAGES: Dict[OtpError, str] = {
    OtpError.MISSING_INPUT: "Phone number and code are required.",
    OtpError.RATE_LIMITED: (
        f"Too many requests. Try again in an hour "
        f"(max {RATE_LIMIT_MAX} codes per number per hour)."
    ),
    OtpError.NOT_FOUND: "No code was sent to this number, or it has expired.",
    OtpError.EXPIRED: "The verification code has expired. Request a new one.",
    OtpError.MISMATCH: "The verification code is incorrect.",
    OtpError.DELIVERY_DISCONNECTED: (
        "WhatsApp is disconnected. Scan the pairing QR code again and retry."
    ),
    OtpError.DELIVERY_INVALID_NUMBER: "Invalid phone number format.",
    OtpError.DELIVERY_FAILED: "Could not send the code over WhatsApp.",
}

_DELIVERY_ERRORS = {
    DeliveryFailure.DISCONNECTED: OtpError.DELIVERY_DISCONNECTED,
    DeliveryFailure.INVALID_NUMBER: OtpError.DELIVERY_INVALID_NUMBER,
    DeliveryFailure.OTHER: OtpError.DELIVERY_FAILED,
}


@dataclass(frozen=True)
class OtpResult:
    ok: bool
    error: Optional[OtpError] = None

    @property
    def message(self) -> str:
        if self.error is None:
            return ""
        return ERROR_MESSAGES[self.error]


OK = OtpResult(ok=True)


def _fail(error: OtpError) -> OtpResult:
    return OtpResult(ok=False, error=error)


@dataclass
class OtpRecord:
    code: str
    expires_at: float


def normalize_phone(phone: str) -> str:
    return str(phone or "").strip()


class OtpStore:
    """
    Process-local OTP records plus a sliding-window send counter per phone.

    Each map has its own lock, held only for one check-and-mutate step. The
    delivery call in request_code runs outside both locks.
    """

    def __init__(
        self,
        messenger: Optional[Messenger] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.messenger = messenger
        self._clock = clock
        self._rng = rng or random.SystemRandom()
        self._records: Dict[str, OtpRecord] = {}
        self._sends: Dict[str, Deque[float]] = {}
        self._records_lock = threading.Lock()
        self._sends_lock = threading.Lock()

    def generate_code(self) -> str:
        return f"{self._rng.randint(100000, 999999)}"

    def get(self, phone: str) -> Optional[OtpRecord]:
        with self._records_lock:
            return self._records.get(normalize_phone(phone))

    def attempts_in_window(self, phone: str) -> int:
        key = normalize_phone(phone)
        with self._sends_lock:
            return len(self._purge(key, self._clock()))

    def _purge(self, key: str, now: float) -> Deque[float]:
        stamps = self._sends.setdefault(key, deque())
        while stamps and now - stamps[0] >= RATE_LIMIT_WINDOW_SECONDS:
            stamps.popleft()
        return stamps

    def _reserve_attempt(self, key: str) -> bool:
        now = self._clock()
        with self._sends_lock:
            stamps = self._purge(key, now)
            if len(stamps) >= RATE_LIMIT_MAX:
                return False
            stamps.append(now)
            return True

    def _rollback(self, key: str, record: OtpRecord) -> None:
        # Only drop the record this call created; a newer send may have
        # replaced it while delivery was in flight.
        with self._records_lock:
            current = self._records.get(key)
            if current is record:
                del self._records[key]

    def request_code(self, phone: str) -> OtpResult:
        key = normalize_phone(phone)
        if not key:
            return _fail(OtpError.MISSING_INPUT)

        if not self._reserve_attempt(key):
            logger.info("OTP rate limit hit for %s", mask_phone(key))
            return _fail(OtpError.RATE_LIMITED)

        code = self.generate_code()
        record = OtpRecord(code=code, expires_at=self._clock() + OTP_EXPIRY_SECONDS)
        with self._records_lock:
            self._records[key] = record

        if self.messenger is None:
            self._rollback(key, record)
            logger.error("OTP for %s not sent: messaging client unavailable", mask_phone(key))
            return _fail(OtpError.DELIVERY_DISCONNECTED)

        try:
            self.messenger.send_message(key, OTP_MESSAGE_TEMPLATE.format(code=code))
        except DeliveryError as exc:
            self._rollback(key, record)
            logger.warning("OTP delivery to %s failed (%s): %s", mask_phone(key), exc.reason.value, exc.detail)
            return _fail(_DELIVERY_ERRORS[exc.reason])
        except Exception:
            self._rollback(key, record)
            logger.exception("OTP delivery to %s failed", mask_phone(key))
            return _fail(OtpError.DELIVERY_FAILED)

        logger.info("OTP sent to %s", mask_phone(key))
        return OK

    def verify_code(self, phone: str, code: str) -> OtpResult:
        key = normalize_phone(phone)
        if not key:
            return _fail(OtpError.MISSING_INPUT)
        candidate = str(code).strip()

        with self._records_lock:
            record = self._records.get(key)
            if record is None:
                return _fail(OtpError.NOT_FOUND)
            if self._clock() > record.expires_at:
                del self._records[key]
                return _fail(OtpError.EXPIRED)
            if not secrets.compare_digest(candidate.encode("utf-8"), record.code.encode("utf-8")):
                return _fail(OtpError.MISMATCH)
            del self._records[key]

        logger.info("OTP verified for %s", mask_phone(key))
        return OK
