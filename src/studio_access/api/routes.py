"""API routes for studio access."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from studio_access.core.errors import GatewayError, NotFoundError, PermissionDeniedError
from studio_access.core.manager import StudioManager
from studio_access.core.sessions import Session

router = APIRouter()

# Dependency to get the manager instance
_manager: Optional[StudioManager] = None


def get_manager() -> StudioManager:
    if _manager is None:
        raise HTTPException(status_code=500, detail="Manager not initialized")
    return _manager


def set_manager(manager: Optional[StudioManager]) -> None:
    global _manager
    _manager = manager


async def get_current_session(
    authorization: Optional[str] = Header(None),
    manager: StudioManager = Depends(get_manager),
) -> Session:
    """Resolve the bearer session id issued by the auth layer."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    session = await manager.sessions.get(token.strip())
    if session is None:
        raise HTTPException(status_code=401, detail="Session expired or invalid")
    return session


async def require_admin(session: Session = Depends(get_current_session)) -> Session:
    if not session.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return session


def require_gateway(manager: StudioManager = Depends(get_manager)) -> StudioManager:
    if not manager.gateway_configured:
        raise HTTPException(status_code=503, detail="Smart lock gateway not configured")
    return manager


def _http_error(e: ValueError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PermissionDeniedError):
        return HTTPException(status_code=403, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# Request/Response models


class BookingRequest(BaseModel):
    room_id: int
    date: str
    start_time: str
    end_time: str


class BlockRequest(BaseModel):
    room_id: int
    date: str
    start_time: str
    end_time: str
    reason: Optional[str] = None
    is_recurring: bool = False
    recurring_until: Optional[str] = None


class BlockUpdateRequest(BaseModel):
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    reason: Optional[str] = None


# Health


@router.get("/health")
async def health_check(manager: StudioManager = Depends(get_manager)):
    """Check the health of all components."""
    return await manager.health_check()


# Room endpoints


@router.get("/rooms")
async def get_rooms(manager: StudioManager = Depends(get_manager)):
    """List bookable rooms."""
    return await manager.get_rooms()


@router.get("/rooms/{room_id}")
async def get_room(room_id: int, manager: StudioManager = Depends(get_manager)):
    try:
        return await manager.get_room(room_id)
    except ValueError as e:
        raise _http_error(e)


@router.get("/rooms/{room_id}/availability")
async def get_availability(
    room_id: int,
    day: str = Query(..., alias="date", description="Date as YYYY-MM-DD"),
    manager: StudioManager = Depends(get_manager),
):
    """Booked and blocked time ranges for a room on a date."""
    try:
        return await manager.get_availability(room_id, day)
    except ValueError as e:
        raise _http_error(e)


# Booking endpoints


@router.get("/bookings")
async def get_my_bookings(
    from_date: Optional[date] = Query(None, description="Filter from date"),
    to_date: Optional[date] = Query(None, description="Filter to date"),
    session: Session = Depends(get_current_session),
    manager: StudioManager = Depends(get_manager),
):
    """Get the caller's bookings."""
    return await manager.get_bookings(
        user_id=session.user_id, from_date=from_date, to_date=to_date
    )


@router.get("/bookings/{booking_id}")
async def get_booking(
    booking_id: int,
    session: Session = Depends(get_current_session),
    manager: StudioManager = Depends(get_manager),
):
    try:
        return await manager.get_booking(booking_id, session.user_id, is_admin=session.is_admin)
    except ValueError as e:
        raise _http_error(e)


@router.post("/bookings", status_code=201)
async def create_booking(
    request: BookingRequest,
    session: Session = Depends(get_current_session),
    manager: StudioManager = Depends(get_manager),
):
    """Book a room and issue its door passcode."""
    try:
        return await manager.create_booking(
            user_id=session.user_id,
            room_id=request.room_id,
            day=request.date,
            start=request.start_time,
            end=request.end_time,
        )
    except ValueError as e:
        raise _http_error(e)


@router.patch("/bookings/{booking_id}/cancel")
async def cancel_booking(
    booking_id: int,
    session: Session = Depends(get_current_session),
    manager: StudioManager = Depends(get_manager),
):
    """Cancel a booking; owners and admins only."""
    try:
        return await manager.cancel_booking(booking_id, session.user_id, is_admin=session.is_admin)
    except ValueError as e:
        raise _http_error(e)


# Admin booking endpoints


@router.get("/admin/bookings")
async def get_all_bookings(
    user_id: Optional[int] = Query(None, description="Filter by user"),
    room_id: Optional[int] = Query(None, description="Filter by room"),
    from_date: Optional[date] = Query(None, description="Filter from date"),
    to_date: Optional[date] = Query(None, description="Filter to date"),
    _: Session = Depends(require_admin),
    manager: StudioManager = Depends(get_manager),
):
    return await manager.get_bookings(
        user_id=user_id, room_id=room_id, from_date=from_date, to_date=to_date
    )


@router.post("/admin/bookings/{booking_id}/resync")
async def resync_booking(
    booking_id: int,
    _: Session = Depends(require_admin),
    manager: StudioManager = Depends(get_manager),
):
    """Re-push a booking's passcode to its locks."""
    try:
        return await manager.resync_booking(booking_id)
    except ValueError as e:
        raise _http_error(e)


@router.post("/admin/users/{user_id}/cancel-bookings")
async def cancel_user_bookings(
    user_id: int,
    _: Session = Depends(require_admin),
    manager: StudioManager = Depends(get_manager),
):
    """Cancel every upcoming booking of a user."""
    return await manager.cancel_user_bookings(user_id)


# Blocked slot endpoints


@router.get("/admin/blocked-slots")
async def get_blocked_slots(
    room_id: Optional[int] = Query(None, description="Filter by room"),
    from_date: Optional[date] = Query(None, description="Filter from date"),
    to_date: Optional[date] = Query(None, description="Filter to date"),
    _: Session = Depends(require_admin),
    manager: StudioManager = Depends(get_manager),
):
    return await manager.get_blocks(room_id=room_id, from_date=from_date, to_date=to_date)


@router.post("/admin/blocked-slots", status_code=201)
async def create_blocked_slot(
    request: BlockRequest,
    _: Session = Depends(require_admin),
    manager: StudioManager = Depends(get_manager),
):
    """Block a slot, optionally repeating weekly."""
    try:
        created = await manager.create_block(
            room_id=request.room_id,
            day=request.date,
            start=request.start_time,
            end=request.end_time,
            reason=request.reason,
            recurring=request.is_recurring,
            recur_until=request.recurring_until,
        )
    except ValueError as e:
        raise _http_error(e)
    return {"created": len(created), "blocks": created}


@router.patch("/admin/blocked-slots/{block_id}")
async def update_blocked_slot(
    block_id: int,
    request: BlockUpdateRequest,
    _: Session = Depends(require_admin),
    manager: StudioManager = Depends(get_manager),
):
    """Edit one blocked slot; the rest of its series is left alone."""
    try:
        return await manager.update_block(
            block_id, start=request.start_time, end=request.end_time, reason=request.reason
        )
    except ValueError as e:
        raise _http_error(e)


@router.delete("/admin/blocked-slots/{block_id}")
async def delete_blocked_slot(
    block_id: int,
    _: Session = Depends(require_admin),
    manager: StudioManager = Depends(get_manager),
):
    """Delete a blocked slot; deleting a series head removes the series."""
    try:
        return await manager.delete_block(block_id)
    except ValueError as e:
        raise _http_error(e)


# Smart lock endpoints


@router.get("/smart-lock/status")
async def get_lock_status(
    room_id: int = Query(..., description="Room whose locks to query"),
    _: Session = Depends(require_admin),
    manager: StudioManager = Depends(require_gateway),
):
    try:
        return await manager.get_lock_status(room_id)
    except ValueError as e:
        raise _http_error(e)


@router.get("/smart-lock/logs")
async def get_lock_logs(
    room_id: int = Query(..., description="Room whose locks to query"),
    start: Optional[str] = Query(None, description="First date, YYYY-MM-DD"),
    end: Optional[str] = Query(None, description="Last date, YYYY-MM-DD"),
    _: Session = Depends(require_admin),
    manager: StudioManager = Depends(require_gateway),
):
    """Unlock history of a room's locks."""
    try:
        return await manager.get_access_log(room_id, start=start, end=end)
    except ValueError as e:
        raise _http_error(e)
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))


# Reconciliation endpoints


@router.post("/admin/reconcile/{task}")
async def run_reconciliation(
    task: str,
    _: Session = Depends(require_admin),
    manager: StudioManager = Depends(get_manager),
):
    """Run a reconciliation task now: expire, purge or resync."""
    try:
        return await manager.run_reconciliation(task)
    except ValueError as e:
        raise _http_error(e)
