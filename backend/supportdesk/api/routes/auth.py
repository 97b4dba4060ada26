"""
Login route issuing bearer tokens.
"""
from fastapi import APIRouter, Depends, HTTPException, status
import logging

from sqlalchemy.orm import Session

from ...database import get_db
from ...models.schemas import LoginRequest, TokenResponse
from ...services.auth_service import auth_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/token", response_model=TokenResponse)
async def login(body: LoginRequest, db: Session = Depends(get_db)) -> TokenResponse:
    profile = auth_service.authenticate(db, body.email, body.password)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"}
        )

    logger.info(f"User logged in: {profile.id}")
    return TokenResponse(
        access_token=auth_service.issue_for_profile(profile),
        user_id=profile.id,
        role=profile.role
    )
