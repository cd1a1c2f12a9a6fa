from tokoreg.schemas.auth import AccountResponse, PinLogin, Token
from tokoreg.schemas.registration import (
    StartRegistrationRequest,
    SubmitOtpRequest,
    SubmitFieldsRequest,
    HandoffRequest,
    InboundChatMessage,
)
