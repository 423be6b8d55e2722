"""
services/user/router.py
Profile of the signed-in user, including the device token used for push delivery.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import AuthContext, get_auth_context
from shared.models.models import User
from shared.schemas.schemas import APIResponse, ProfileResponse, ProfileUpdateRequest
from shared.utils.errors import NotFoundError

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/profile", response_model=APIResponse[ProfileResponse])
async def get_profile(auth: AuthContext = Depends(get_auth_context)):
    return APIResponse(message="Profile retrieved successfully", data=ProfileResponse.model_validate(auth.user))


@router.put("/profile", response_model=APIResponse[ProfileResponse])
async def update_profile(
    data: ProfileUpdateRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """
    Update name, profile image and FCM token.
    Only fields present in the request body are changed.
    """
    user = await db.get(User, auth.user_id)
    if not user:
        raise NotFoundError("User not found")

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    await db.commit()

    return APIResponse(message="Profile updated successfully", data=ProfileResponse.model_validate(user))
