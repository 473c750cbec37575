"""Event type catalogue."""

from fastapi import APIRouter

from eventrelay.services.event_types import SUBSCRIBABLE_EVENT_TYPES

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/types", response_model=list[str])
async def list_event_types():
    """List every event type a subscription may filter on."""
    return sorted(SUBSCRIBABLE_EVENT_TYPES)
