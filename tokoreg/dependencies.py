"""Shared dependencies: DB session, chat transport, current account, registration claims, chat webhook signature."""
import logging

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from twilio.request_validator import RequestValidator

from tokoreg.config import get_settings
from tokoreg.database import get_db
from tokoreg.models.account import Account
from tokoreg.services.auth import decode_token_with_error, REGISTRATION_TOKEN_SUBJECT
from tokoreg.services.transport import ChatTransport, build_chat_transport

log = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

_transport: ChatTransport | None = None


def get_chat_transport() -> ChatTransport:
    """One transport per process, built from settings on first use."""
    global _transport
    if _transport is None:
        _transport = build_chat_transport(get_settings())
    return _transport


def _bearer_payload(credentials: HTTPAuthorizationCredentials | None) -> dict:
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    token_str = (credentials.credentials or "").strip()
    payload, _ = decode_token_with_error(token_str)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return payload


def get_current_account(
    db: Session = Depends(get_db),
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Account:
    payload = _bearer_payload(credentials)
    if payload.get("sub") == REGISTRATION_TOKEN_SUBJECT:
        raise HTTPException(status_code=401, detail="Finish registration before using this endpoint.")
    try:
        account_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")
    account = db.query(Account).filter(Account.id == account_id).first()
    if not account or not account.is_active:
        raise HTTPException(status_code=401, detail="Account not found")
    return account


def get_registration_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Requires a registration token (from /register/otp). Returns its claims: session_id, identity."""
    payload = _bearer_payload(credentials)
    if payload.get("sub") != REGISTRATION_TOKEN_SUBJECT or not payload.get("session_id") or not payload.get("identity"):
        raise HTTPException(status_code=401, detail="Invalid or expired registration session. Please verify your phone again.")
    return payload


async def verify_chat_webhook(request: Request) -> None:
    """Inbound chat messages must carry a valid X-Twilio-Signature.

    The JSON body is bound through the bodySHA256 query parameter, as Twilio signs JSON webhooks.
    Without an auth token configured, unsigned calls are only accepted in development.
    """
    settings = get_settings()
    token = (settings.twilio_auth_token or "").strip()
    if not token:
        if settings.app_env == "development":
            return
        log.warning("[Webhook] Rejected inbound chat message: TWILIO_AUTH_TOKEN is not configured")
        raise HTTPException(status_code=403, detail="Chat webhook is not configured")
    signature = request.headers.get("X-Twilio-Signature", "")
    body = (await request.body()).decode("utf-8", errors="replace")
    if not signature or "bodySHA256" not in request.query_params:
        raise HTTPException(status_code=403, detail="Missing webhook signature")
    if not RequestValidator(token).validate(str(request.url), body, signature):
        log.warning("[Webhook] Rejected inbound chat message with a bad signature")
        raise HTTPException(status_code=403, detail="Invalid webhook signature")
