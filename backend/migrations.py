from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.config import LOGGER
from backend.db import ConnectionProfile, db_session
from backend.llm import is_openrouter_endpoint

MIGRATION_LOGGER = LOGGER.getChild("migrations")


class OpenRouterProfileCandidate(BaseModel):
    id: str
    name: str
    base_url: Optional[str] = None
    user_id: str


class ProfileConversionError(BaseModel):
    profile_id: str
    error: str


class ProfileConversionResult(BaseModel):
    checked: int = 0
    converted: int = 0
    errors: List[ProfileConversionError] = Field(default_factory=list)


def _openrouter_candidates(session: Session, user_id: Optional[str]) -> List[ConnectionProfile]:
    query = select(ConnectionProfile).where(ConnectionProfile.provider == "OPENAI_COMPATIBLE")
    if user_id:
        query = query.where(ConnectionProfile.user_id == user_id)
    return [
        profile
        for profile in session.scalars(query.order_by(ConnectionProfile.created_at))
        if is_openrouter_endpoint(profile.base_url)
    ]


def check_openrouter_profiles(user_id: Optional[str] = None) -> List[OpenRouterProfileCandidate]:
    """Profiles that would be moved to the native OpenRouter provider."""
    with db_session() as session:
        return [
            OpenRouterProfileCandidate(
                id=profile.id,
                name=profile.name,
                base_url=profile.base_url,
                user_id=profile.user_id,
            )
            for profile in _openrouter_candidates(session, user_id)
        ]


def convert_openrouter_profiles(user_id: Optional[str] = None) -> ProfileConversionResult:
    with db_session() as session:
        profile_ids = [profile.id for profile in _openrouter_candidates(session, user_id)]
    result = ProfileConversionResult(checked=len(profile_ids))
    # Each profile commits on its own.
    for profile_id in profile_ids:
        try:
            with db_session() as session:
                profile = session.get(ConnectionProfile, profile_id)
                if profile is None:
                    continue
                profile.provider = "OPENROUTER"
                profile.base_url = None
        except SQLAlchemyError as exc:
            MIGRATION_LOGGER.warning(
                "openrouter_profile_conversion_failed profile_id=%s error=%s", profile_id, exc
            )
            result.errors.append(ProfileConversionError(profile_id=profile_id, error=str(exc)))
            continue
        result.converted += 1
    if result.checked:
        MIGRATION_LOGGER.info(
            "openrouter_profiles_converted checked=%s converted=%s errors=%s",
            result.checked,
            result.converted,
            len(result.errors),
        )
    return result
