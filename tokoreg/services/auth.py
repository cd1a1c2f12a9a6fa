"""Credential issuing: PIN hashing, access tokens, registration tokens."""
from datetime import datetime, timedelta, timezone
import bcrypt
import jwt
from sqlalchemy.orm import Session
from tokoreg.config import get_settings
from tokoreg.models.account import Account

settings = get_settings()

REGISTRATION_TOKEN_SUBJECT = "registration"


def _pin_bytes(pin: str) -> bytes:
    return pin.encode("utf-8")


def verify_pin(plain: str, hashed: str | None) -> bool:
    if not plain or not hashed:
        return False
    try:
        return bcrypt.checkpw(_pin_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


def hash_pin(pin: str) -> str:
    return bcrypt.hashpw(_pin_bytes(pin), bcrypt.gensalt(rounds=settings.pin_bcrypt_rounds)).decode("utf-8")


def _encode(payload: dict) -> str:
    raw = jwt.encode(
        payload,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return raw if isinstance(raw, str) else raw.decode("utf-8")


def create_access_token(account_id: int, identity: str) -> str:
    """Bearer credential used by both PIN login and registration completion."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_access_token_expire_minutes)
    # PyJWT expects "sub" to be a string
    payload = {"sub": str(account_id), "identity": identity, "exp": expire}
    return _encode(payload)


def create_registration_token(identity: str, session_id: str) -> str:
    """Short-lived JWT minted after a successful OTP; authorizes web form writes for one session."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.registration_token_expire_minutes)
    payload = {"sub": REGISTRATION_TOKEN_SUBJECT, "session_id": session_id, "identity": identity, "exp": expire}
    return _encode(payload)


def decode_token(token: str) -> dict | None:
    payload, _ = decode_token_with_error(token)
    return payload


def decode_token_with_error(token: str) -> tuple[dict | None, str | None]:
    """Decode JWT; returns (payload, error_message)."""
    if not token or not isinstance(token, str):
        return None, "empty token"
    token = token.strip()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return payload, None
    except jwt.ExpiredSignatureError as e:
        return None, str(e)
    except jwt.PyJWTError as e:
        return None, str(e)


def authenticate_pin(db: Session, identity: str, pin: str) -> Account | None:
    """Return the active account when identity + PIN match, else None."""
    account = db.query(Account).filter(Account.identity == identity).first()
    if not account or not account.registration_completed_at:
        return None
    if not verify_pin(pin, account.pin_hash):
        return None
    return account
