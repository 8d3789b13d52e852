"""Shared rating store used as the authoritative rated-title source."""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import RatingRecord

logger = logging.getLogger(__name__)

MIN_RATING = 0
MAX_RATING = 5


class RatingStore(Protocol):
    """Authoritative store of member ratings shared with the whole group."""

    async def list_rated_title_ids(self, group_id: str, member_id: str) -> set[str]: ...

    async def upsert_rating(
        self, group_id: str, member_id: str, title_id: str, value: int
    ) -> None: ...


class RatingRepository:
    """Reads and writes member ratings in the relational store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_rated_title_ids(self, group_id: str, member_id: str) -> set[str]:
        """Return rated title ids, or an empty set if the store is unreachable."""

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(RatingRecord.title_id).where(
                        RatingRecord.group_id == group_id,
                        RatingRecord.member_id == member_id,
                    )
                )
                return {str(title_id) for title_id in result.scalars().all()}
        except SQLAlchemyError as exc:
            logger.warning(
                "Failed to load ratings for group %s member %s: %s",
                group_id,
                member_id,
                exc,
            )
            return set()

    async def upsert_rating(
        self, group_id: str, member_id: str, title_id: str, value: int
    ) -> None:
        if not MIN_RATING <= value <= MAX_RATING:
            raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")
        async with self._session_factory() as session:
            result = await session.execute(
                select(RatingRecord).where(
                    RatingRecord.group_id == group_id,
                    RatingRecord.member_id == member_id,
                    RatingRecord.title_id == title_id,
                )
            )
            record = result.scalar_one_or_none()
            if record is None:
                session.add(
                    RatingRecord(
                        group_id=group_id,
                        member_id=member_id,
                        title_id=title_id,
                        value=value,
                    )
                )
            else:
                record.value = value
            await session.commit()
