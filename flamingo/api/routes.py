from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from flamingo.api.schemas import (
    AccessTokenResponse,
    CollaboratorAddRequest,
    CollaboratorListResponse,
    CollaboratorResponse,
    CollaboratorRoleRequest,
    CollaboratorSummaryResponse,
    EmailAvailabilityResponse,
    Envelope,
    GoogleStartResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProjectListResponse,
    ProjectRequest,
    ProjectResponse,
    RefreshTokenRequest,
    RegisterRequest,
    RegisterResponse,
    TokenBody,
    UserProfile,
    UserSummary,
    VerifyEmailRequest,
    VerifyEmailResponse,
    validate_email,
)
from flamingo.logging import get_logger
from flamingo.service.auth import AuthContext, LoginResult
from flamingo.service.errors import ErrorCode, ServiceError
from flamingo.service.runtime import Runtime, check_rate_limit
from flamingo.storage.models import ProjectRole, UserType

logger = get_logger(__name__)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int
) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limited", key=key.split(":", 1)[0], retry_after=reset_seconds)
        raise ServiceError(
            ErrorCode.TOO_MANY_REQUESTS, details={"retry_after": reset_seconds}
        )


async def enforce_global_rate_limit(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> None:
    await _enforce_rate_limit(
        runtime,
        f"global:{_client_ip(request)}",
        runtime.settings.global_rate_limit,
        runtime.settings.global_rate_window_seconds,
    )


async def enforce_auth_rate_limit(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> None:
    await _enforce_rate_limit(
        runtime,
        f"auth:{_client_ip(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_window_seconds,
    )


async def get_current_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return await runtime.auth.authenticate(authorization)


router = APIRouter(prefix="/api/v1", dependencies=[Depends(enforce_global_rate_limit)])


def _login_envelope(result: LoginResult) -> Envelope:
    user = result.user
    return Envelope(
        success=True,
        data=LoginResponse(
            user=UserSummary(id=user.id, name=user.name, user_type=user.user_type.value),
            token=TokenBody(
                access_token=result.tokens.access_token,
                refresh_token=result.tokens.refresh_token,
            ),
        ),
    )


# -- auth ------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create a pending account and email its verification link.

    Raises:
        400: REQUIRED_PRIVACY or VALIDATION_ERROR
        409: EMAIL_ALREADY_EXISTS
    """
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        name=body.name,
        user_type=UserType(body.user_type),
        agree_terms=body.agree_terms,
        agree_privacy=body.agree_privacy,
        agree_marketing=body.agree_marketing,
    )
    return Envelope(
        success=True,
        data=RegisterResponse(
            user_id=result.user.id,
            email=result.user.email,
            message="registration complete; check your email to verify the account",
        ),
    )


@router.get("/auth/check-email", response_model=Envelope, tags=["auth"])
async def check_email(
    email: Optional[str] = Query(None),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        address = validate_email(email or "")
    except ValueError:
        raise ServiceError(ErrorCode.INVALID_EMAIL_FORMAT)
    available = await runtime.auth.check_email_available(address)
    return Envelope(success=True, data=EmailAvailabilityResponse(available=available))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, runtime: Runtime = Depends(get_runtime)):
    """Consume a verification token and activate the account.

    Raises:
        400: VERIFICATION_TOKEN_ALREADY_USED or VERIFICATION_TOKEN_EXPIRED
        404: VERIFICATION_TOKEN_NOT_FOUND
    """
    user = await runtime.auth.verify_email(body.token)
    return Envelope(
        success=True,
        data=VerifyEmailResponse(
            message="email verified", user=UserProfile.from_user(user)
        ),
    )


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def login(
    body: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    """Password login.

    Raises:
        401: LOGIN_FAILED
        403: ACCOUNT_NOT_ACTIVE
        423: ACCOUNT_LOCKED
    """
    result = await runtime.auth.login(
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    return _login_envelope(result)


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def refresh(body: RefreshTokenRequest, runtime: Runtime = Depends(get_runtime)):
    access = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        success=True,
        data=AccessTokenResponse(access_token=access.token, expires_in=access.expires_in),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: RefreshTokenRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.logout(body.refresh_token)
    return Envelope(success=True, data=MessageResponse(message="logged out"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.get_profile(principal.user_id)
    return Envelope(success=True, data=UserProfile.from_user(user))


@router.get("/auth/google", response_model=Envelope, tags=["auth"])
async def google_start(runtime: Runtime = Depends(get_runtime)):
    start = await runtime.auth.start_google_signin()
    return Envelope(
        success=True,
        data=GoogleStartResponse(
            authorization_url=start["authorization_url"], state=start["state"]
        ),
    )


@router.get("/auth/google/callback", response_model=Envelope, tags=["auth"])
async def google_callback(
    request: Request,
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=128),
    runtime: Runtime = Depends(get_runtime),
):
    """Finish Google sign-in; the body matches password login."""
    result = await runtime.auth.complete_google_signin(
        code,
        state,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    return _login_envelope(result)


# -- projects --------------------------------------------------------------


@router.post("/projects", response_model=Envelope, status_code=201, tags=["projects"])
async def create_project(
    body: ProjectRequest,
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    project = await runtime.projects.create_project(principal.user_id, body.name)
    return Envelope(success=True, data=ProjectResponse.from_project(project))


@router.get("/projects", response_model=Envelope, tags=["projects"])
async def list_projects(
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    projects = await runtime.projects.list_projects(principal.user_id)
    return Envelope(
        success=True,
        data=ProjectListResponse(items=[ProjectResponse.from_project(p) for p in projects]),
    )


@router.put("/projects/{project_id}", response_model=Envelope, tags=["projects"])
async def update_project(
    body: ProjectRequest,
    project_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    project = await runtime.projects.update_project(project_id, principal.user_id, body.name)
    return Envelope(success=True, data=ProjectResponse.from_project(project))


@router.delete("/projects/{project_id}", response_model=Envelope, tags=["projects"])
async def delete_project(
    project_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.projects.delete_project(project_id, principal.user_id)
    return Envelope(success=True, data=MessageResponse(message="project deleted"))


@router.post(
    "/projects/{project_id}/collaborators",
    response_model=Envelope,
    status_code=201,
    tags=["projects"],
)
async def add_collaborator(
    body: CollaboratorAddRequest,
    project_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Invite a registered user to the project.

    Raises:
        403: FORBIDDEN unless the caller owns the project
        404: USER_TO_ADD_NOT_FOUND
        409: USER_ALREADY_COLLABORATOR
    """
    edge = await runtime.projects.add_collaborator(
        project_id, principal.user_id, body.email, ProjectRole(body.role)
    )
    return Envelope(success=True, data=CollaboratorResponse.from_edge(edge))


@router.get(
    "/projects/{project_id}/collaborators", response_model=Envelope, tags=["projects"]
)
async def list_collaborators(
    project_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    rows = await runtime.projects.list_collaborators(project_id, principal.user_id)
    return Envelope(
        success=True,
        data=CollaboratorListResponse(
            items=[CollaboratorSummaryResponse.from_summary(row) for row in rows]
        ),
    )


@router.put(
    "/projects/{project_id}/collaborators/{user_id}",
    response_model=Envelope,
    tags=["projects"],
)
async def update_collaborator_role(
    body: CollaboratorRoleRequest,
    project_id: str = Path(..., max_length=64),
    user_id: int = Path(...),
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Change a collaborator's role.

    Raises:
        400: CANNOT_CHANGE_OWNER_ROLE or CANNOT_CHANGE_OWN_ROLE
        403: FORBIDDEN
        404: COLLABORATOR_NOT_FOUND
    """
    edge = await runtime.projects.update_collaborator_role(
        project_id, principal.user_id, user_id, ProjectRole(body.role)
    )
    return Envelope(success=True, data=CollaboratorResponse.from_edge(edge))


@router.delete(
    "/projects/{project_id}/collaborators/{user_id}",
    response_model=Envelope,
    tags=["projects"],
)
async def remove_collaborator(
    project_id: str = Path(..., max_length=64),
    user_id: int = Path(...),
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.projects.remove_collaborator(project_id, principal.user_id, user_id)
    return Envelope(success=True, data=MessageResponse(message="collaborator removed"))
