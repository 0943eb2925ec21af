"""Endpoints used by the sign-in flow to hand over user credentials."""

import logging

from fastapi import APIRouter

from calmirror.api.dependencies import ServicesDep
from calmirror.api.models import UserCredentialRequest, UserResponse
from calmirror.core.models import User

logger = logging.getLogger(__name__)

router = APIRouter()


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        email=user.email,
        name=user.name,
        has_credential=user.has_credential,
        channel_id=user.channel.channel_id if user.channel else None,
        channel_expiration=user.channel.expiration if user.channel else None,
    )


@router.put("/{email}", response_model=UserResponse)
async def store_credential(email: str, request: UserCredentialRequest, services: ServicesDep):
    """Create the user on first sign-in, or replace the credential on later ones."""
    user = await services.store.upsert_user(
        email.strip().lower(),
        access_token=request.access_token,
        refresh_token=request.refresh_token,
        name=request.name,
    )
    logger.info(f"Stored credential for {user.email}")
    return _user_response(user)
