"""Inbound chat messages from the transport adapter (already parsed to phone + text)."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tokoreg.database import get_db
from tokoreg.dependencies import get_chat_transport, verify_chat_webhook
from tokoreg.schemas.registration import ChatReplyResponse, InboundChatMessage
from tokoreg.services.chat_flow import ChatFlow
from tokoreg.services.transport import ChatTransport

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/inbound", response_model=ChatReplyResponse, dependencies=[Depends(verify_chat_webhook)])
def inbound(
    data: InboundChatMessage,
    db: Session = Depends(get_db),
    transport: ChatTransport = Depends(get_chat_transport),
):
    """Replies go out through the chat transport and are echoed here. handled=false: not a registration message.
    No credential is returned; a chat-registered owner signs in with the PIN at /auth/login."""
    reply = ChatFlow(db, transport).handle_message(data.phone, data.text)
    outcome = reply.completion
    return ChatReplyResponse(
        handled=reply.handled,
        messages=reply.messages,
        completed=bool(outcome and outcome.success),
    )
