"""Auth schemas: PIN login and the account view."""
from datetime import datetime

from pydantic import BaseModel, field_validator

from tokoreg.services.identity import canonicalize, validate_identity


def validate_phone(value: str | None) -> str:
    errors = validate_identity(value)
    if errors:
        raise ValueError(" ".join(errors))
    return canonicalize(value)


class PhoneField(BaseModel):
    """Any request keyed by phone number; the value is canonicalized on the way in."""
    phone: str

    @field_validator("phone")
    @classmethod
    def phone_valid(cls, v: str) -> str:
        return validate_phone(v)


class PinLogin(PhoneField):
    pin: str


class AccountResponse(BaseModel):
    id: int
    identity: str
    store_name: str | None = None
    owner_name: str | None = None
    registration_method: str | None = None
    is_active: bool = False
    onboarding_complete: bool = False
    registration_completed_at: datetime | None = None

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    account: AccountResponse
