from __future__ import annotations

import logging
import os

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from database import init_db
from routers.otp import request_validation_handler, router as otp_router
from utils.otp_service import OtpStore
from utils.whatsapp import init_messaging_client


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="WhatsApp OTP Backend")

# Codes live in this process only; a restart forgets them.
app.state.messenger = None
app.state.otp_store = OtpStore()

app.add_exception_handler(RequestValidationError, request_validation_handler)
app.include_router(otp_router, prefix="/api")


@app.on_event("startup")
def _startup():
    init_db()
    # Resolved once; a missing bridge leaves the app up with delivery disabled.
    messenger = init_messaging_client()
    app.state.messenger = messenger
    app.state.otp_store.messenger = messenger
    logger.info("OTP service ready (WhatsApp %s)", "enabled" if messenger else "disabled")


@app.get("/")
def root():
    return {"status": "Backend running"}
