"""Presence router.

Endpoints:
    GET /presence/{user_id} - Whether a user is connected right now, and when
                              they were last seen
"""
from fastapi import APIRouter, Depends

from pharmalink.auth import AuthenticatedUser, get_current_user

from .hub import ChatHub
from .schemas import PresenceResponse

router = APIRouter(prefix="/presence", tags=["presence"])


@router.get("/{user_id}", response_model=PresenceResponse)
async def get_presence(
    user_id: int,
    user: AuthenticatedUser = Depends(get_current_user),
) -> PresenceResponse:
    """Get a user's presence.

    ``lastSeen`` is the current time for an online user, the time of their
    last disconnect otherwise, and null if they have not connected since the
    server started.
    """
    return ChatHub.get_instance().presence.snapshot(user_id)
