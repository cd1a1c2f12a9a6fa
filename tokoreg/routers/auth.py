"""PIN login and current account."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from tokoreg.database import get_db
from tokoreg.dependencies import get_current_account
from tokoreg.models.account import Account
from tokoreg.schemas.auth import AccountResponse, PinLogin, Token
from tokoreg.services.auth import authenticate_pin, create_access_token
from tokoreg.services.identity import mask_identity
import logging

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=Token)
def login(data: PinLogin, db: Session = Depends(get_db)):
    account = authenticate_pin(db, data.phone, data.pin)
    if not account:
        logging.getLogger("uvicorn.error").info("[Auth] Failed login for %s", mask_identity(data.phone))
        raise HTTPException(status_code=401, detail="Invalid phone number or PIN")
    if not account.is_active:
        raise HTTPException(status_code=403, detail="Account is not active")
    return Token(
        access_token=create_access_token(account.id, account.identity),
        account=AccountResponse.model_validate(account),
    )


@router.get("/me", response_model=AccountResponse)
def me(account: Account = Depends(get_current_account)):
    return AccountResponse.model_validate(account)
