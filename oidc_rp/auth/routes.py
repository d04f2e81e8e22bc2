"""
Authentication routes exposed to downstream clients.

Login, callback and logout are intercepted by the middleware; this router
only reports who the current request belongs to.
"""

from fastapi import APIRouter, Depends

from ..models import Identity, UserProfile
from .session import get_current_identity


auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


@auth_router.get("/me", response_model=UserProfile)
async def me(identity: Identity = Depends(get_current_identity)) -> UserProfile:
    """Profile of the signed-in user."""
    return UserProfile.from_identity(identity)
