"""Chat transport adapters. Flows receive one of these at construction; none is a global."""
import logging
from typing import Protocol

from tokoreg.config import Settings
from tokoreg.services.identity import mask_identity

log = logging.getLogger("uvicorn.error")


class ChatTransport(Protocol):
    def send_text(self, identity: str, text: str) -> bool: ...

    def send_document(self, identity: str, data: bytes, filename: str, mime_type: str) -> bool: ...


class TwilioWhatsAppTransport:
    """WhatsApp via Twilio's Messages API. Delivery failures are logged and reported as False."""

    def __init__(self, account_sid: str, auth_token: str, from_number: str):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self._client = None

    def _get_client(self):
        if self._client is None:
            from twilio.rest import Client
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def send_text(self, identity: str, text: str) -> bool:
        try:
            self._get_client().messages.create(
                body=text,
                from_=f"whatsapp:+{self.from_number.lstrip('+')}",
                to=f"whatsapp:+{identity}",
            )
            return True
        except Exception as e:
            log.warning("[Twilio] send_text to %s failed: %s", mask_identity(identity), e)
            return False

    def send_document(self, identity: str, data: bytes, filename: str, mime_type: str) -> bool:
        # Twilio needs a public media URL; raw bytes are not uploaded from here
        log.warning("[Twilio] send_document(%s) to %s not supported without a media URL", filename, mask_identity(identity))
        return False


class ConsoleChatTransport:
    """Development transport: logs messages and keeps them in an outbox."""

    def __init__(self):
        self.outbox: list[tuple[str, str]] = []
        self.documents: list[tuple[str, str, str, int]] = []

    def send_text(self, identity: str, text: str) -> bool:
        self.outbox.append((identity, text))
        log.info("[Chat] -> %s: %s", mask_identity(identity), text)
        return True

    def send_document(self, identity: str, data: bytes, filename: str, mime_type: str) -> bool:
        self.documents.append((identity, filename, mime_type, len(data)))
        log.info("[Chat] -> %s: document %s (%s, %d bytes)", mask_identity(identity), filename, mime_type, len(data))
        return True


def build_chat_transport(settings: Settings) -> ChatTransport:
    if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_whatsapp_from:
        return TwilioWhatsAppTransport(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_whatsapp_from,
        )
    log.info("[Chat] Twilio not configured - using console transport (messages are only logged)")
    return ConsoleChatTransport()
