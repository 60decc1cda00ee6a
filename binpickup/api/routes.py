from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from binpickup.api.schemas import (
    AdminCreateUserRequest,
    AdminUpdateUserRequest,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PickupAssignRequest,
    PickupCreateRequest,
    PickupResponse,
    PickupUpdateRequest,
    RegisterRequest,
    RoleChangeRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
    ok,
)
from binpickup.logging import get_logger
from binpickup.service.auth import AuthContext
from binpickup.service.errors import RateLimitedError
from binpickup.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    if not await check_rate_limit(runtime, key, limit, window_seconds):
        logger.warning("rate_limited", key_kind=key.split(":", 1)[0])
        raise RateLimitedError("Too many requests, please try again later")


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        authorization,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
        path=request.url.path,
    )


async def get_optional_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    runtime = get_runtime()
    return await runtime.auth.optional_authenticate(
        authorization,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
        path=request.url.path,
    )


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    return get_runtime().auth.require_role(principal, "admin")


async def get_staff_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    return get_runtime().auth.require_role(principal, "employee", "admin")


def _session_payload(account, pair) -> dict:
    return {
        "user": UserResponse.from_account(account).render(),
        "tokens": TokenResponse.from_pair(pair).render(),
    }


# auth


@router.post("/auth/register", status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_ip(request)}",
        runtime.settings.auth_rate_limit_per_minute,
    )
    account, pair = await runtime.auth.register(
        name=body.name or body.email.split("@", 1)[0],
        email=body.email,
        password=body.password,
        phone=body.phone,
        address=body.address,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return ok("Account created successfully", _session_payload(account, pair))


@router.post("/auth/login", tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: unknown email or wrong password (same response for both)
        423: account locked; ``data.lockUntil`` says when to retry
        429: too many attempts for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.auth_rate_limit_per_minute,
    )
    account, pair = await runtime.auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return ok("Login successful", _session_payload(account, pair))


@router.post("/auth/refresh", tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    _account, pair = await runtime.auth.refresh(
        body.refresh_token,
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return ok("Token refreshed successfully", {"tokens": TokenResponse.from_pair(pair).render()})


@router.post("/auth/logout", tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    body = body or LogoutRequest()
    await runtime.auth.logout(
        principal.token,
        principal.account_id,
        refresh_token=body.refresh_token,
        logout_all=body.logout_all,
    )
    return ok("Logged out from all devices" if body.logout_all else "Logout successful")


@router.patch("/auth/change-password", tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.account_id,
        principal.token,
        body.current_password,
        body.new_password,
    )
    return ok("Password changed successfully. Please log in again.")


@router.get("/auth/me", tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    account = await runtime.auth.get_profile(principal.account_id)
    return ok("Profile retrieved", {"user": UserResponse.from_account(account).render()})


# pickups


@router.post("/pickups", status_code=201, tags=["pickups"])
async def create_pickup(
    body: PickupCreateRequest,
    principal: Optional[AuthContext] = Depends(get_optional_user),
):
    runtime = get_runtime()
    pickup = await runtime.pickups.create(
        name=body.name, phone=body.phone, address=body.address, ctx=principal
    )
    return ok("Pickup request created", {"pickup": PickupResponse.from_pickup(pickup).render()})


@router.get("/pickups", tags=["pickups"])
async def list_my_pickups(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    pickups = await runtime.pickups.list_for(principal)
    return ok(
        "Pickups retrieved",
        {"pickups": [PickupResponse.from_pickup(p).render() for p in pickups]},
    )


@router.get("/pickups/all", tags=["pickups"])
async def list_all_pickups(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    pickups = await runtime.pickups.list_all()
    return ok(
        "Pickups retrieved",
        {"pickups": [PickupResponse.from_pickup(p).render() for p in pickups]},
    )


@router.post("/pickups/assign", tags=["pickups"])
async def assign_pickup(
    body: PickupAssignRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    pickup = await runtime.pickups.assign(body.pickup_id, body.employee_id)
    return ok("Pickup assigned", {"pickup": PickupResponse.from_pickup(pickup).render()})


@router.post("/pickups/complete/{pickup_id}", tags=["pickups"])
async def complete_pickup(
    pickup_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_staff_user),
):
    runtime = get_runtime()
    pickup = await runtime.pickups.complete(pickup_id, principal)
    return ok("Pickup completed", {"pickup": PickupResponse.from_pickup(pickup).render()})


# admin


@router.get("/admin/users", tags=["admin"])
async def admin_list_users(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    accounts = await runtime.users.list_users()
    return ok(
        "Users retrieved",
        {"users": [UserResponse.from_account(a).render() for a in accounts]},
    )


@router.post("/admin/users", status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    account = await runtime.auth.admin_create_user(
        name=body.name,
        email=body.email,
        password=body.password,
        role=body.role,
        phone=body.phone,
        address=body.address,
        created_by=principal.account_id,
    )
    return ok("User created", {"user": UserResponse.from_account(account).render()})


@router.put("/admin/users/{user_id}", tags=["admin"])
async def admin_update_user(
    body: AdminUpdateUserRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await runtime.users.update_user(
        user_id,
        name=body.name,
        email=body.email,
        phone=body.phone,
        address=body.address,
    )
    return ok("User updated", {"user": UserResponse.from_account(account).render()})


@router.patch("/admin/users/{user_id}/role", tags=["admin"])
async def admin_change_role(
    body: RoleChangeRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await runtime.users.change_role(user_id, body.role)
    return ok("Role updated", {"id": account.id, "role": account.role})


@router.delete("/admin/users/{user_id}", tags=["admin"])
async def admin_delete_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    await runtime.users.delete_user(user_id, acting_id=principal.account_id)
    return ok("User deleted")


@router.put("/admin/pickups/{pickup_id}", tags=["admin"])
async def admin_update_pickup(
    body: PickupUpdateRequest,
    pickup_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    pickup = await runtime.pickups.admin_update(
        pickup_id, body.model_dump(exclude_none=True)
    )
    return ok("Pickup updated", {"pickup": PickupResponse.from_pickup(pickup).render()})


@router.delete("/admin/pickups/{pickup_id}", tags=["admin"])
async def admin_delete_pickup(
    pickup_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    await runtime.pickups.delete(pickup_id)
    return ok("Pickup request deleted")
