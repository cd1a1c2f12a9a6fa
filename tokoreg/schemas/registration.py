"""Registration schemas (web and chat entry points)."""
from datetime import datetime

from pydantic import BaseModel, Field

from tokoreg.models.registration_session import Channel
from tokoreg.schemas.auth import AccountResponse, PhoneField
from tokoreg.services.bridge import HandoffDirection


class StartRegistrationRequest(PhoneField):
    channel: Channel = Channel.web


class StartRegistrationResponse(BaseModel):
    channel: str
    session_id: str | None = None
    is_new: bool = False
    current_step: str | None = None
    message: str | None = None
    code_sent: bool = False
    code_expires_at: datetime | None = None


class SubmitOtpRequest(PhoneField):
    code: str = Field(min_length=4, max_length=10)


class SubmitOtpResponse(BaseModel):
    valid: bool = True
    session_id: str
    registration_token: str
    current_step: str | None = None
    data_complete: bool = False


class ResendOtpRequest(PhoneField):
    pass


class SubmitFieldsRequest(BaseModel):
    """Web form; any subset of fields. Requires the registration token from /register/otp."""
    store_name: str | None = None
    owner_name: str | None = None
    pin: str | None = None


class SubmitFieldsResponse(BaseModel):
    completed: bool = False
    missing_fields: list[str] = []
    conflicts: list[str] = []
    access_token: str | None = None
    token_type: str = "bearer"
    account: AccountResponse | None = None


class HandoffRequest(PhoneField):
    direction: HandoffDirection = HandoffDirection.to_web


class HandoffResponse(BaseModel):
    """url is only returned for to_chat (redeemed by messaging from the phone itself); a to_web link
    holds a verification code and is sent to the chat instead."""
    session_id: str
    direction: str
    url: str | None = None
    link_sent: bool = False
    expires_at: datetime


class RestartRequest(BaseModel):
    """Requires the registration token; the identity comes from its claims."""
    channel: Channel = Channel.web


class RestartResponse(BaseModel):
    session_id: str
    current_step: str
    expires_at: datetime
    registration_token: str


class WhatsAppLinkRequest(PhoneField):
    pass


class WhatsAppLinkResponse(BaseModel):
    wa_link: str
    expires_at: datetime


class PendingCodeStatus(BaseModel):
    has_pending_code: bool = False
    purpose: str | None = None
    expires_at: datetime | None = None
    attempts_remaining: int | None = None


class SessionStatusResponse(BaseModel):
    has_session: bool
    session_id: str | None = None
    status: str | None = None
    current_step: str | None = None
    origin_channel: str | None = None
    fields_present: dict[str, bool] = {}
    expires_at: datetime | None = None
    pending_code: PendingCodeStatus = PendingCodeStatus()


class RegistrationStatusResponse(BaseModel):
    is_registered: bool
    has_active_session: bool
    missing_fields: list[str] = []


class InboundChatMessage(PhoneField):
    text: str = ""


class ChatReplyResponse(BaseModel):
    handled: bool
    messages: list[str] = []
    completed: bool = False
