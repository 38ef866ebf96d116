from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel
from sqlalchemy.exc import OperationalError

from clinic_backend.auth_models import User
from clinic_backend.auth_security import get_subject
from clinic_backend.auth_service import (
    confirm_email,
    forgot_password,
    get_user_by_id,
    register_user,
    resend_confirmation,
    reset_password,
    validate_reset_token,
)
from clinic_backend.config import get_settings
from clinic_backend.errors import AuthError, InvalidRequest, ServiceUnavailable
from clinic_backend.mail_service import MailService
from clinic_backend.preauth_store import PreAuthStore
from clinic_backend.seed import seed_demo_users
from clinic_backend.sessions import Session, logout, refresh_session
from clinic_backend.two_factor import PreAuthSession, TwoFactorHandshake
from clinic_backend.two_factor_setup import (
    confirm_two_factor,
    disable_two_factor,
    regenerate_backup_codes,
    request_disable_code,
    setup_two_factor,
    two_factor_status,
)

logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

store = PreAuthStore()
mail = MailService()
handshake = TwoFactorHandshake(store, mail)


def get_mail() -> MailService:
    return mail


def get_handshake() -> TwoFactorHandshake:
    return handshake



# Startup

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # tables + purge of stale pre-auth sessions
    store.start()
    if settings.seed_demo_users:
        seed_demo_users()
    yield


app = FastAPI(title="Clinic Backend API", version="1.0.0", lifespan=lifespan)



# Error mapping

@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(OperationalError)
async def db_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    logger.exception("Persistence failure on %s", request.url.path)
    err = ServiceUnavailable()
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.exception_handler(InvalidRequest)
async def invalid_request_handler(request: Request, exc: InvalidRequest) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "invalid_request", "detail": str(exc)})



# Auth schemas

class RegisterIn(BaseModel):
    email: str
    password: str
    first_name: str
    last_name: str


class TokenIn(BaseModel):
    token: str


class EmailIn(BaseModel):
    email: str


class ResetPasswordIn(BaseModel):
    token: str
    new_password: str


class TokenOut(BaseModel):
    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"

    @classmethod
    def of(cls, session: Session) -> "TokenOut":
        return cls(access_token=session.access_token, refresh_token=session.refresh_token)


class RefreshIn(BaseModel):
    refreshToken: str


class TwoFactorMethodsOut(BaseModel):
    authenticator: bool
    email: bool


class PreAuthResponse(BaseModel):
    twoFactorToken: str
    email: str
    twoFactorMethods: TwoFactorMethodsOut
    expiresIn: int


class VerifyIn(BaseModel):
    twoFactorToken: str
    method: str
    code: str


class EmailCodeIn(BaseModel):
    twoFactorToken: str


class MethodIn(BaseModel):
    method: str


class ConfirmIn(BaseModel):
    method: str
    code: str


class DisableIn(BaseModel):
    method: str
    password: str
    code: str


class PasswordIn(BaseModel):
    password: str


class MeOut(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    is_active: bool
    two_factor_enabled: bool



# Auth dependencies

def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    # strip stray spaces / quotes pasted with the token
    token = token.strip().strip('"').strip("'")

    user_id = get_subject(token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    u = get_user_by_id(user_id)
    if not u or not u.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    return u



# AUTH endpoints

@app.get("/api/health")
def health() -> dict[str, Any]:
    return {"ok": True}


@app.post("/api/auth/register", response_model=dict)
def register(payload: RegisterIn, mailer: MailService = Depends(get_mail)) -> dict[str, Any]:
    user_id = register_user(payload.email, payload.password, payload.first_name, payload.last_name, mailer)
    return {"ok": True, "user_id": user_id}


@app.post("/api/auth/confirm-email", response_model=dict)
def api_confirm_email(payload: TokenIn) -> dict[str, Any]:
    if not confirm_email(payload.token):
        raise HTTPException(status_code=400, detail="Invalid or expired confirmation link")
    return {"ok": True}


@app.post("/api/auth/login", response_model=TokenOut | PreAuthResponse)
def login(
    request: Request,
    form: OAuth2PasswordRequestForm = Depends(),
    hs: TwoFactorHandshake = Depends(get_handshake),
) -> TokenOut | PreAuthResponse:
    """
    Primary credentials (form: username = email).
    - no second factor enrolled -> bearer token
    - otherwise                 -> pre-auth token for /api/auth/2fa/verify
    """
    result = hs.initiate(form.username, form.password, ip_address=client_ip(request))
    if isinstance(result, PreAuthSession):
        return PreAuthResponse(**result.as_dict())
    return TokenOut.of(result)


@app.post("/api/auth/2fa/verify", response_model=TokenOut)
def verify_two_factor(
    payload: VerifyIn,
    request: Request,
    hs: TwoFactorHandshake = Depends(get_handshake),
) -> TokenOut:
    session = hs.verify(payload.twoFactorToken, payload.method, payload.code, ip_address=client_ip(request))
    return TokenOut.of(session)


@app.post("/api/auth/2fa/email-code", response_model=dict)
def send_email_code(payload: EmailCodeIn, hs: TwoFactorHandshake = Depends(get_handshake)) -> dict[str, Any]:
    hs.request_email_code(payload.twoFactorToken)
    return {"ok": True}


@app.post("/api/auth/forgot-password", response_model=dict)
def api_forgot_password(payload: EmailIn, mailer: MailService = Depends(get_mail)) -> dict[str, Any]:
    forgot_password(payload.email, mailer)
    return {"ok": True, "detail": "If the account exists, a reset link has been sent."}


@app.post("/api/auth/reset-password", response_model=dict)
def api_reset_password(payload: ResetPasswordIn) -> dict[str, Any]:
    if not reset_password(payload.token, payload.new_password):
        raise HTTPException(status_code=400, detail="Invalid or expired reset link")
    return {"ok": True}


@app.post("/api/auth/validate-reset-token", response_model=dict)
def api_validate_reset_token(payload: TokenIn) -> dict[str, Any]:
    return {"valid": validate_reset_token(payload.token)}


@app.post("/api/auth/resend-confirmation", response_model=dict)
def api_resend_confirmation(payload: EmailIn, mailer: MailService = Depends(get_mail)) -> dict[str, Any]:
    resend_confirmation(payload.email, mailer)
    return {"ok": True, "detail": "If the account still needs confirming, a new link has been sent."}


@app.post("/api/auth/refresh", response_model=TokenOut)
def api_refresh(payload: RefreshIn) -> TokenOut:
    return TokenOut.of(refresh_session(payload.refreshToken))



# PROTECTED endpoints (JWT)

@app.post("/api/auth/logout", response_model=dict)
def api_logout(user: User = Depends(get_current_user)) -> dict[str, Any]:
    logout(user.id)
    return {"ok": True}


@app.get("/api/me", response_model=MeOut)
def me(user: User = Depends(get_current_user)) -> MeOut:
    return MeOut(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        is_active=user.is_active,
        two_factor_enabled=user.two_factor_enabled,
    )


@app.get("/api/auth/2fa/status")
def api_two_factor_status(user: User = Depends(get_current_user)) -> dict[str, Any]:
    return two_factor_status(user.id).as_dict()


@app.post("/api/auth/2fa/setup")
def api_setup_two_factor(
    payload: MethodIn,
    user: User = Depends(get_current_user),
    mailer: MailService = Depends(get_mail),
) -> dict[str, Any]:
    """
    authenticator -> secret + otpauth URI + QR code (data URI)
    email         -> a setup code is sent to the account address
    """
    setup = setup_two_factor(user.id, payload.method, mailer)
    if setup is None:
        return {"ok": True, "detail": "Verification code sent by email."}
    return {
        "ok": True,
        "secret": setup.secret,
        "otpauthUri": setup.otpauth_uri,
        "qrCodeDataUri": setup.qr_code_data_uri,
    }


@app.post("/api/auth/2fa/confirm")
def api_confirm_two_factor(payload: ConfirmIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return confirm_two_factor(user.id, payload.method, payload.code).as_dict()


@app.post("/api/auth/2fa/disable-code", response_model=dict)
def api_request_disable_code(
    user: User = Depends(get_current_user),
    mailer: MailService = Depends(get_mail),
) -> dict[str, Any]:
    request_disable_code(user.id, mailer)
    return {"ok": True}


@app.post("/api/auth/2fa/disable")
def api_disable_two_factor(payload: DisableIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return disable_two_factor(user.id, payload.method, payload.password, payload.code).as_dict()


@app.post("/api/auth/2fa/backup-codes")
def api_regenerate_backup_codes(payload: PasswordIn, user: User = Depends(get_current_user)) -> dict[str, Any]:
    return regenerate_backup_codes(user.id, payload.password).as_dict()
