from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from tokengate.api.schemas import (
    AdminLoginRequest,
    AdminLoginResponse,
    AdminRegisterRequest,
    AdminResponse,
    AdminUpdateRequest,
    EmailSettingsResponse,
    EmailSettingsUpdateRequest,
    Envelope,
    LoginTokenCreateRequest,
    LoginTokenCreateResponse,
    LoginTokenDecisionRequest,
    LoginTokenDecisionResponse,
    SessionResponse,
    UserAuthResponse,
    UserResponse,
)
from tokengate.logging import get_logger
from tokengate.service.devices import ClientFingerprint, client_fingerprint
from tokengate.service.email_settings import EmailSettingsView
from tokengate.service.gate import AdminPrincipal, UserPrincipal
from tokengate.service.runtime import get_runtime
from tokengate.storage.models import Admin, User, UserToken

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

LOGIN_TOKEN_HEADER = "X-Login-Token"
SESSION_TOKEN_HEADER = "X-Session-Token"


def _admin_response(admin: Admin) -> AdminResponse:
    return AdminResponse(
        id=admin.id,
        name=admin.name,
        username=admin.username,
        created_by=admin.created_by,
        created_at=admin.created_at,
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id, email=user.email, banned=user.banned, created_at=user.created_at
    )


def _session_response(session: UserToken) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        ip_address=session.ip_address,
        device=session.device,
        disconnected=session.disconnected,
        last_activity=session.last_activity,
        expires_at=session.expires_at,
        created_at=session.created_at,
    )


def _email_settings_response(view: EmailSettingsView) -> EmailSettingsResponse:
    return EmailSettingsResponse(
        host=view.host,
        port=view.port,
        username=view.username,
        use_tls=view.use_tls,
        from_address=view.from_address,
        from_name=view.from_name,
        password_set=view.password_set,
        source=view.source,
    )


def _client_fingerprint(request: Request) -> ClientFingerprint:
    runtime = get_runtime()
    return client_fingerprint(
        request.client.host if request.client else None,
        request.headers.get("User-Agent"),
        required=runtime.settings.require_client_fingerprint,
    )


def get_admin(authorization: Optional[str] = Header(None)) -> AdminPrincipal:
    return get_runtime().gate.authenticate_admin(authorization)


def get_optional_admin(
    authorization: Optional[str] = Header(None),
) -> Optional[AdminPrincipal]:
    if not authorization:
        return None
    return get_runtime().gate.authenticate_admin(authorization)


def get_user(
    response: Response,
    authorization: Optional[str] = Header(None),
    login_token: Optional[str] = Header(None, alias=LOGIN_TOKEN_HEADER),
) -> UserPrincipal:
    principal = get_runtime().gate.authenticate_user(authorization, login_token)
    if principal.token:
        # Client must replace its stored session credential
        response.headers[SESSION_TOKEN_HEADER] = principal.token
    return principal


# -- admins ---------------------------------------------------------------


@router.post("/admins/login", response_model=Envelope, tags=["admins"])
def admin_login(body: AdminLoginRequest):
    admin, token = get_runtime().admins.login(body.username, body.password)
    return Envelope(
        status="ok",
        data=AdminLoginResponse(admin=_admin_response(admin), token=token),
    )


@router.post("/admins/register", response_model=Envelope, status_code=201, tags=["admins"])
def admin_register(
    body: AdminRegisterRequest,
    principal: Optional[AdminPrincipal] = Depends(get_optional_admin),
):
    """Create an admin.

    Without credentials this only succeeds while no admin exists yet.
    """
    admin = get_runtime().admins.register(
        name=body.name,
        username=body.username,
        password=body.password,
        confirm_password=body.confirm_password,
        created_by=principal.admin if principal else None,
    )
    return Envelope(status="ok", data=_admin_response(admin))


@router.get("/admins/me", response_model=Envelope, tags=["admins"])
def admin_me(principal: AdminPrincipal = Depends(get_admin)):
    return Envelope(status="ok", data=_admin_response(principal.admin))


@router.patch("/admins/me", response_model=Envelope, tags=["admins"])
def admin_update(body: AdminUpdateRequest, principal: AdminPrincipal = Depends(get_admin)):
    admin = get_runtime().admins.update(
        principal.admin.id,
        name=body.name,
        username=body.username,
        password=body.password,
        confirm_password=body.confirm_password,
    )
    return Envelope(status="ok", data=_admin_response(admin))


# -- email settings -------------------------------------------------------


@router.get("/email-settings", response_model=Envelope, tags=["email-settings"])
def get_email_settings(principal: AdminPrincipal = Depends(get_admin)):
    view = get_runtime().email_settings.get()
    return Envelope(status="ok", data=_email_settings_response(view))


@router.put("/email-settings", response_model=Envelope, tags=["email-settings"])
def update_email_settings(
    body: EmailSettingsUpdateRequest, principal: AdminPrincipal = Depends(get_admin)
):
    view = get_runtime().email_settings.update(
        host=body.host,
        port=body.port,
        username=body.username,
        password=body.password,
        use_tls=body.use_tls,
        from_address=body.from_address,
        from_name=body.from_name,
    )
    logger.info("email_settings_changed", admin_id=principal.admin.id)
    return Envelope(status="ok", data=_email_settings_response(view))


# -- login tokens ---------------------------------------------------------


@router.post("/login-tokens", response_model=Envelope, status_code=201, tags=["login"])
def request_login(body: LoginTokenCreateRequest, request: Request):
    """Start an email sign-in.

    The response carries the handoff token the requesting device presents
    in the X-Login-Token header once the emailed link has been approved.
    """
    result = get_runtime().login_tokens.request_login(body.email, _client_fingerprint(request))
    return Envelope(
        status="ok",
        data=LoginTokenCreateResponse(
            login_token_id=result.login_token_id,
            handoff_token=result.handoff_token,
            expires_at=result.expires_at,
        ),
    )


@router.post("/login-tokens/decide", response_model=Envelope, tags=["login"])
def decide_login(body: LoginTokenDecisionRequest):
    row = get_runtime().login_tokens.decide(body.token, body.approve)
    return Envelope(
        status="ok",
        data=LoginTokenDecisionResponse(
            login_token_id=row.id, authorized=row.authorized, denied=row.denied
        ),
    )


# -- users and sessions ---------------------------------------------------


@router.get("/users/me", response_model=Envelope, tags=["users"])
def user_me(principal: UserPrincipal = Depends(get_user)):
    return Envelope(
        status="ok",
        data=UserAuthResponse(
            user=_user_response(principal.user),
            session=_session_response(principal.session),
            token=principal.token,
        ),
    )


@router.post("/users/{user_id}/ban", response_model=Envelope, tags=["users"])
def ban_user(user_id: str, principal: AdminPrincipal = Depends(get_admin)):
    user = get_runtime().users.ban(user_id, by=principal.admin)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/users/{user_id}/unban", response_model=Envelope, tags=["users"])
def unban_user(user_id: str, principal: AdminPrincipal = Depends(get_admin)):
    user = get_runtime().users.unban(user_id, by=principal.admin)
    return Envelope(status="ok", data=_user_response(user))


@router.patch(
    "/user-tokens/{session_id}/disconnect", response_model=Envelope, tags=["sessions"]
)
def disconnect_session(session_id: str, principal: UserPrincipal = Depends(get_user)):
    session = get_runtime().sessions.disconnect(session_id, principal.user.id)
    return Envelope(status="ok", data=_session_response(session))
