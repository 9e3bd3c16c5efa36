"""Repository pattern for database operations."""

import hashlib
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from source_query.errors import ConflictError
from source_query.models.source import (
    IN_FLIGHT_STATES,
    EmbeddingSummary,
    ScrapedContent,
    Source,
    SourceStatus,
    StatusDetail,
)
from source_query.storage.database import ScrapedContentORM, SourceORM


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SourceRepository:
    """Repository for source CRUD and status transitions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, source_id: str) -> Source | None:
        """Get a source by ID."""
        result = await self.session.execute(
            select(SourceORM).where(SourceORM.id == source_id)
        )
        orm = result.scalar_one_or_none()
        return self._to_model(orm) if orm else None

    async def get_owned(self, source_id: str, owner_id: str) -> Source | None:
        """Get a source only if it belongs to *owner_id*."""
        result = await self.session.execute(
            select(SourceORM).where(
                SourceORM.id == source_id,
                SourceORM.owner_id == owner_id,
            )
        )
        orm = result.scalar_one_or_none()
        return self._to_model(orm) if orm else None

    async def get_by_origin(self, origin: str) -> Source | None:
        """Get the source registered for *origin*, whoever owns it."""
        result = await self.session.execute(
            select(SourceORM).where(SourceORM.origin_hash == compute_content_hash(origin))
        )
        orm = result.scalar_one_or_none()
        return self._to_model(orm) if orm else None

    async def list_by_owner(self, owner_id: str) -> list[Source]:
        """Get all sources owned by a principal, newest first."""
        result = await self.session.execute(
            select(SourceORM)
            .where(SourceORM.owner_id == owner_id)
            .order_by(SourceORM.created_at.desc(), SourceORM.id)
        )
        return [self._to_model(orm) for orm in result.scalars()]

    async def create(self, source: Source) -> Source:
        """Create a new source. Duplicate origins are a conflict."""
        orm = SourceORM(
            id=source.id,
            kind=source.kind,
            origin=source.origin,
            origin_hash=compute_content_hash(source.origin),
            title=source.title,
            description=source.description,
            status=source.status.value,
            owner_id=source.owner_id,
            created_at=source.created_at,
            updated_at=source.updated_at,
        )
        self.session.add(orm)
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise ConflictError("Source already registered") from e
        return source

    async def delete(self, source_id: str, owner_id: str) -> bool:
        """Delete a source row owned by *owner_id*."""
        result = await self.session.execute(
            delete(SourceORM).where(
                SourceORM.id == source_id,
                SourceORM.owner_id == owner_id,
            )
        )
        await self.session.commit()
        return result.rowcount > 0

    async def transition(
        self,
        source_id: str,
        expected: Iterable[SourceStatus],
        new_status: SourceStatus,
        detail: StatusDetail | None = None,
        **fields: Any,
    ) -> bool:
        """
        Compare-and-set the status of a source.

        The update only applies while the stored status is one of *expected*;
        returns False when another writer got there first.
        """
        values: dict[str, Any] = {"status": new_status.value, "updated_at": _now()}
        if detail is not None:
            values["status_detail"] = detail.model_dump(mode="json")
        if "embeddings" in fields and isinstance(fields["embeddings"], EmbeddingSummary):
            fields["embeddings"] = fields["embeddings"].model_dump(mode="json")
        values.update(fields)

        result = await self.session.execute(
            update(SourceORM)
            .where(
                SourceORM.id == source_id,
                SourceORM.status.in_([s.value for s in expected]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def update_detail(
        self, source_id: str, status: SourceStatus, detail: StatusDetail
    ) -> bool:
        """Replace the status detail without changing the state."""
        result = await self.session.execute(
            update(SourceORM)
            .where(SourceORM.id == source_id, SourceORM.status == status.value)
            .values(status_detail=detail.model_dump(mode="json"), updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def reset_to_unknown(self, owner_id: str) -> list[str]:
        """
        Reset every idle source of *owner_id* to unknown.

        Sources with a run in flight are left alone. Returns the reset ids.
        """
        in_flight = [s.value for s in IN_FLIGHT_STATES]
        result = await self.session.execute(
            select(SourceORM.id).where(
                SourceORM.owner_id == owner_id,
                SourceORM.status.not_in(in_flight),
            )
        )
        ids = list(result.scalars())
        if ids:
            await self.session.execute(
                update(SourceORM)
                .where(SourceORM.id.in_(ids), SourceORM.status.not_in(in_flight))
                .values(
                    status=SourceStatus.UNKNOWN.value,
                    status_detail=None,
                    embeddings=None,
                    updated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
        await self.session.commit()
        return ids

    async def has_in_flight(self) -> bool:
        """Whether any source, of any owner, has a run in flight."""
        result = await self.session.execute(
            select(SourceORM.id)
            .where(SourceORM.status.in_([s.value for s in IN_FLIGHT_STATES]))
            .limit(1)
        )
        return result.first() is not None

    async def interrupt_in_flight(
        self, message: str, source_ids: Iterable[str] | None = None
    ) -> list[str]:
        """
        Move in-flight sources to error with *message* as the last error.

        Limited to *source_ids* when given, otherwise every in-flight source.
        Returns the ids that were moved.
        """
        in_flight = [s.value for s in IN_FLIGHT_STATES]
        query = select(SourceORM.id).where(SourceORM.status.in_(in_flight))
        if source_ids is not None:
            source_ids = list(source_ids)
            if not source_ids:
                return []
            query = query.where(SourceORM.id.in_(source_ids))
        ids = list((await self.session.execute(query)).scalars())
        if ids:
            detail = StatusDetail(last_error=message)
            await self.session.execute(
                update(SourceORM)
                .where(SourceORM.id.in_(ids), SourceORM.status.in_(in_flight))
                .values(
                    status=SourceStatus.ERROR.value,
                    status_detail=detail.model_dump(mode="json"),
                    updated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
        await self.session.commit()
        return ids

    def _to_model(self, orm: SourceORM) -> Source:
        return Source(
            id=orm.id,
            kind=orm.kind,
            origin=orm.origin,
            title=orm.title,
            description=orm.description,
            status=SourceStatus(orm.status),
            status_detail=StatusDetail(**orm.status_detail) if orm.status_detail else None,
            owner_id=orm.owner_id,
            last_scraped=orm.last_scraped,
            embeddings=EmbeddingSummary(**orm.embeddings) if orm.embeddings else None,
            created_at=orm.created_at,
            updated_at=orm.updated_at,
        )


class ScrapedContentRepository:
    """Repository for the latest extracted content of each source."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, source_id: str) -> ScrapedContent | None:
        """Get the scraped content for a source."""
        result = await self.session.execute(
            select(ScrapedContentORM).where(ScrapedContentORM.source_id == source_id)
        )
        orm = result.scalar_one_or_none()
        return self._to_model(orm) if orm else None

    async def upsert(self, content: ScrapedContent) -> ScrapedContent:
        """Create or replace the content for a source."""
        values = dict(
            owner_id=content.owner_id,
            url=content.url,
            title=content.title,
            description=content.description,
            body=content.body,
            content_length=content.content_length,
            status_code=content.status_code,
            scraped_at=content.scraped_at,
        )
        existing = await self.session.get(ScrapedContentORM, content.source_id)

        if existing:
            await self.session.execute(
                update(ScrapedContentORM)
                .where(ScrapedContentORM.source_id == content.source_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        else:
            self.session.add(ScrapedContentORM(source_id=content.source_id, **values))
        await self.session.commit()
        return content

    async def delete_by_source(self, source_id: str) -> int:
        """Delete the content of one source."""
        result = await self.session.execute(
            delete(ScrapedContentORM).where(ScrapedContentORM.source_id == source_id)
        )
        await self.session.commit()
        return result.rowcount

    async def delete_by_owner(self, owner_id: str, exclude: Iterable[str] = ()) -> int:
        """Delete all content owned by a principal, except for the *exclude* sources."""
        stmt = delete(ScrapedContentORM).where(ScrapedContentORM.owner_id == owner_id)
        exclude = list(exclude)
        if exclude:
            stmt = stmt.where(ScrapedContentORM.source_id.not_in(exclude))
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount

    def _to_model(self, orm: ScrapedContentORM) -> ScrapedContent:
        return ScrapedContent(
            source_id=orm.source_id,
            owner_id=orm.owner_id,
            url=orm.url,
            title=orm.title,
            description=orm.description or "",
            body=orm.body,
            content_length=orm.content_length,
            status_code=orm.status_code,
            scraped_at=orm.scraped_at,
        )


def compute_content_hash(content: str) -> str:
    """Compute SHA256 hash of content."""
    return hashlib.sha256(content.encode()).hexdigest()
