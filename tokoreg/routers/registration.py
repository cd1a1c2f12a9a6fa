"""Registration endpoints: start, OTP, web form, hand-off, restart, status."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from tokoreg.database import get_db
from tokoreg.dependencies import get_chat_transport, get_registration_claims
from tokoreg.schemas.auth import AccountResponse, validate_phone
from tokoreg.schemas.registration import (
    HandoffRequest,
    HandoffResponse,
    PendingCodeStatus,
    RegistrationStatusResponse,
    ResendOtpRequest,
    RestartRequest,
    RestartResponse,
    SessionStatusResponse,
    StartRegistrationRequest,
    StartRegistrationResponse,
    SubmitFieldsRequest,
    SubmitFieldsResponse,
    SubmitOtpRequest,
    SubmitOtpResponse,
    WhatsAppLinkRequest,
    WhatsAppLinkResponse,
)
from tokoreg.services import registration
from tokoreg.services.auth import create_registration_token
from tokoreg.services.bridge import HandoffDirection
from tokoreg.services.messages import describe_missing, error_message
from tokoreg.services.results import ErrorKind, RegistrationStart
from tokoreg.services.transport import ChatTransport
from tokoreg.services.web_flow import WebFlow

router = APIRouter(prefix="/register", tags=["registration"])

_STATUS_BY_KIND = {
    ErrorKind.validation_failed: 422,
    ErrorKind.not_found: 404,
    ErrorKind.expired: 410,
    ErrorKind.attempts_exceeded: 429,
    ErrorKind.mismatch: 400,
    ErrorKind.incomplete: 409,
    ErrorKind.already_completed: 409,
    ErrorKind.duplicate_account: 409,
    ErrorKind.storage_unavailable: 503,
}


def raise_for_kind(
    kind: ErrorKind,
    *,
    attempts_remaining: int | None = None,
    missing: list[str] | None = None,
    errors: list[str] | None = None,
):
    """Translate a core error kind into an HTTPException with a user-facing message."""
    detail = {
        "error": kind.value,
        "message": error_message(kind, attempts_remaining=attempts_remaining, missing=missing),
    }
    if errors:
        detail["errors"] = errors
    if missing:
        detail["missing_fields"] = describe_missing(missing)
    if attempts_remaining is not None:
        detail["attempts_remaining"] = attempts_remaining
    raise HTTPException(status_code=_STATUS_BY_KIND.get(kind, 400), detail=detail)


def _start_response(started: RegistrationStart) -> StartRegistrationResponse:
    if started.error_kind is not None:
        raise_for_kind(started.error_kind)
    return StartRegistrationResponse(
        channel=started.channel,
        session_id=started.session_id,
        is_new=started.is_new,
        current_step=started.current_step,
        message=started.prompt,
        code_sent=started.code_sent,
        code_expires_at=started.code_expires_at,
    )


@router.post("/start", response_model=StartRegistrationResponse)
def start(
    data: StartRegistrationRequest,
    db: Session = Depends(get_db),
    transport: ChatTransport = Depends(get_chat_transport),
):
    return _start_response(registration.start_registration(db, transport, data.phone, data.channel))


@router.post("/otp", response_model=SubmitOtpResponse)
def submit_otp(
    data: SubmitOtpRequest,
    db: Session = Depends(get_db),
    transport: ChatTransport = Depends(get_chat_transport),
):
    result = registration.submit_otp(db, transport, data.phone, data.code)
    if not result.valid:
        raise_for_kind(result.error_kind, attempts_remaining=result.attempts_remaining)
    return SubmitOtpResponse(
        session_id=result.session_id,
        registration_token=result.registration_token,
        current_step=result.current_step,
        data_complete=result.data_complete,
    )


@router.post("/otp/resend", response_model=StartRegistrationResponse)
def resend_otp(
    data: ResendOtpRequest,
    db: Session = Depends(get_db),
    transport: ChatTransport = Depends(get_chat_transport),
):
    return _start_response(WebFlow(db, transport).resend(data.phone))


@router.post("/fields", response_model=SubmitFieldsResponse)
def submit_fields(
    data: SubmitFieldsRequest,
    claims: dict = Depends(get_registration_claims),
    db: Session = Depends(get_db),
    transport: ChatTransport = Depends(get_chat_transport),
):
    """Web form submission. Completes the registration once every field is present."""
    result = WebFlow(db, transport).submit_form(
        claims["session_id"],
        claims["identity"],
        store_name=data.store_name,
        owner_name=data.owner_name,
        pin=data.pin,
    )
    if result.error_kind is not None:
        raise_for_kind(result.error_kind, missing=result.missing, errors=result.errors)
    if result.completion is None:
        return SubmitFieldsResponse(missing_fields=describe_missing(result.missing), conflicts=result.conflicts)
    return SubmitFieldsResponse(
        completed=True,
        conflicts=result.conflicts,
        access_token=result.completion.credential,
        account=AccountResponse.model_validate(result.completion.account),
    )


@router.post("/handoff", response_model=HandoffResponse)
def handoff(
    data: HandoffRequest,
    db: Session = Depends(get_db),
    transport: ChatTransport = Depends(get_chat_transport),
):
    """to_chat returns the wa.me link; a to_web link carries a code and is only sent to the chat."""
    artifact = registration.initiate_handoff(db, transport, data.phone, data.direction)
    to_chat = artifact.direction == HandoffDirection.to_chat.value
    return HandoffResponse(
        session_id=artifact.session_id,
        direction=artifact.direction,
        url=artifact.url if to_chat else None,
        link_sent=not to_chat,
        expires_at=artifact.expires_at,
    )


@router.post("/restart", response_model=RestartResponse)
def restart(
    data: RestartRequest,
    claims: dict = Depends(get_registration_claims),
    db: Session = Depends(get_db),
):
    """Abandon the current session and open a fresh one. Requires the registration token."""
    identity = claims["identity"]
    handle = registration.restart_registration(db, identity, data.channel)
    return RestartResponse(
        session_id=handle.session_id,
        current_step=handle.current_step,
        expires_at=handle.expires_at,
        registration_token=create_registration_token(identity, handle.session_id),
    )


@router.post("/whatsapp-link", response_model=WhatsAppLinkResponse)
def whatsapp_link(data: WhatsAppLinkRequest, db: Session = Depends(get_db)):
    """Legacy entry: returns a wa.me link that opens the chat registration."""
    return WhatsAppLinkResponse(**registration.create_whatsapp_link(db, data.phone))


def _phone_param(phone: str) -> str:
    try:
        return validate_phone(phone)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/session-status", response_model=SessionStatusResponse)
def session_status(phone: str = Query(...), db: Session = Depends(get_db)):
    view = registration.get_session_status(db, _phone_param(phone))
    return SessionStatusResponse(
        has_session=view.has_session,
        session_id=view.session_id,
        status=view.status,
        current_step=view.current_step,
        origin_channel=view.origin_channel,
        fields_present=view.fields_present,
        expires_at=view.expires_at,
        pending_code=PendingCodeStatus(**view.pending_code),
    )


@router.get("/status", response_model=RegistrationStatusResponse)
def registration_status(phone: str = Query(...), db: Session = Depends(get_db)):
    view = registration.get_registration_status(db, _phone_param(phone))
    return RegistrationStatusResponse(
        is_registered=view.is_registered,
        has_active_session=view.has_active_session,
        missing_fields=describe_missing(view.missing_fields),
    )
