import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from coursebot.core.config import settings
from coursebot.core.rate_limit import rate_limit
from coursebot.core.security import create_access_token, get_current_operator, verify_password
from coursebot.db.session import get_db
from coursebot.models.user import ConsoleOperator

router = APIRouter(prefix="/auth", tags=["auth"])

log = logging.getLogger(__name__)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int | None = None


class MeResponse(BaseModel):
    id: str
    login: str


@router.post("/token", response_model=TokenResponse)
def token(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
    _: object = rate_limit(key_prefix="auth_token", limit=20, window_seconds=60),
):
    operator = db.scalar(select(ConsoleOperator).where(ConsoleOperator.login == form_data.username))
    if operator is None or not verify_password(form_data.password, operator.password_hash):
        log.warning("console login failed login=%s", form_data.username)
        raise HTTPException(status_code=401, detail="invalid credentials")

    log.info("console login login=%s", operator.login)
    return TokenResponse(
        access_token=create_access_token(operator_id=str(operator.id)),
        expires_in=int(settings.jwt_access_token_minutes) * 60,
    )


@router.get("/me", response_model=MeResponse)
def me(operator: ConsoleOperator = Depends(get_current_operator)):
    return {"id": str(operator.id), "login": operator.login}
