"""User-facing texts shared by the chat and web flows."""
from tokoreg.services.results import ErrorKind
from tokoreg.services.validation import FIELD_LABELS

WELCOME = (
    "Welcome to Tokoreg! Let's register your store.\n"
    "Reply 1 to continue here in chat.\n"
    "Reply 2 to continue on the web."
)
OPTIONS_REMINDER = "Please reply 1 to continue here in chat, or 2 to continue on the web."

FIELD_PROMPTS = {
    "store_name": "What is the name of your store?",
    "owner_name": "What is the store owner's full name?",
    "pin_hash": "Create a 6-digit PIN for logging in (no repeated or sequential digits).",
}

CONTINUE_ON_WEB = "Continue your registration on the web: {url}\nThe link is valid for {minutes} minutes."
CONTINUE_IN_CHAT = "Continue in chat: {url}"
FINISH_ON_WEB = "Your registration is in progress on the web. Finish it there, or reply RESTART to start over here."
ALREADY_REGISTERED = "You are already registered. You can log in with your phone number and PIN."
SESSION_EXPIRED = "Your registration session has expired. Reply RESTART to start again."
RESTARTED = "Your registration has been restarted."
HANDOFF_ACCEPTED = "Code accepted. Let's continue here."
TRY_AGAIN = "Something went wrong on our side. Please try again in a moment."
OTP_SENT = "Your Tokoreg verification code is {code}. It expires in {minutes} minutes. Do not share it."
COMPLETED = "Registration complete! Welcome, {owner_name}. Your store {store_name} is ready."
COMPLETED_ON_WEB = "Registration complete on the web. Welcome, {owner_name}! You can keep using this chat."

_KIND_MESSAGES = {
    ErrorKind.not_found: "We couldn't find an active registration. Reply RESTART (or start again on the web) to begin.",
    ErrorKind.expired: "That has expired. Please request a new code or restart your registration.",
    ErrorKind.attempts_exceeded: "Too many wrong codes. Please request a new code.",
    ErrorKind.mismatch: "That code is not correct.",
    ErrorKind.validation_failed: "Some details are not valid.",
    ErrorKind.already_completed: ALREADY_REGISTERED,
    ErrorKind.duplicate_account: ALREADY_REGISTERED,
    ErrorKind.incomplete: "Some registration details are still missing.",
    ErrorKind.storage_unavailable: TRY_AGAIN,
}


def describe_missing(missing: list[str]) -> list[str]:
    return [FIELD_LABELS.get(name, name) for name in missing]


def error_message(kind: ErrorKind | None, attempts_remaining: int | None = None, missing: list[str] | None = None) -> str:
    text = _KIND_MESSAGES.get(kind, TRY_AGAIN)
    if kind == ErrorKind.mismatch and attempts_remaining is not None:
        text += f" {attempts_remaining} attempt(s) left."
    if kind == ErrorKind.incomplete and missing:
        text += " Missing: " + ", ".join(describe_missing(missing)) + "."
    return text


def format_errors(errors: list[str]) -> str:
    return "\n".join(f"- {e}" for e in errors)
