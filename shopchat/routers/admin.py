"""Admin API endpoints for operator takeover and the user registry."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from shopchat.config import settings
from shopchat.dependencies import get_coordinator
from shopchat.logging_config import get_logger
from shopchat.schemas.admin import TakeoverRequest, TakeoverResponse, UsersResponse
from shopchat.services.coordinator import Coordinator

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


def _require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not x_admin_token or x_admin_token != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _takeover_response(coordinator: Coordinator, key: str) -> TakeoverResponse:
    state, until = coordinator.gate.status(key)
    return TakeoverResponse(conversation_key=key, state=state.value, until=until)


# === TAKEOVER ===


@router.get("/takeover/{key}", response_model=TakeoverResponse, dependencies=[Depends(_require_admin_token)])
async def get_takeover(key: str, coordinator: Coordinator = Depends(get_coordinator)):
    return _takeover_response(coordinator, key)


@router.post("/takeover/{key}", response_model=TakeoverResponse, dependencies=[Depends(_require_admin_token)])
async def start_takeover(key: str, request: TakeoverRequest, coordinator: Coordinator = Depends(get_coordinator)):
    coordinator.gate.suspend(key, request.minutes)
    return _takeover_response(coordinator, key)


@router.delete("/takeover/{key}", response_model=TakeoverResponse, dependencies=[Depends(_require_admin_token)])
async def end_takeover(key: str, coordinator: Coordinator = Depends(get_coordinator)):
    coordinator.gate.resume(key)
    return _takeover_response(coordinator, key)


@router.post("/flush/{key}", dependencies=[Depends(_require_admin_token)])
async def flush_buffer(key: str, coordinator: Coordinator = Depends(get_coordinator)):
    """Fire a pending burst without waiting for the silence window."""
    return {"conversation_key": key, "flushed": coordinator.aggregator.flush(key)}


# === USERS ===


@router.get("/users", response_model=UsersResponse, dependencies=[Depends(_require_admin_token)])
async def list_users(coordinator: Coordinator = Depends(get_coordinator)):
    users = await coordinator.history.list_users()
    return UsersResponse(count=len(users), users=users)


@router.delete("/users", dependencies=[Depends(_require_admin_token)])
async def clear_users(coordinator: Coordinator = Depends(get_coordinator)):
    removed = await coordinator.history.clear_users()
    logger.info("User registry cleared")
    return {"removed": removed}
