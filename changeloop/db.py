"""Async database access for per-change state.

Every change keeps its own SQLite database next to its artifacts, so two
changes never contend for the same file.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from .config import settings
from .errors import ChangeNotFoundError
from .models import Base, Change, ExecutionLog, ReviewLog, UsageLog

_engines: dict[Path, AsyncEngine] = {}
_session_factories: dict[Path, async_sessionmaker[AsyncSession]] = {}


def state_db_path(change_dir: Path) -> Path:
    return change_dir / settings.state_db_name


async def _get_factory(change_dir: Path) -> async_sessionmaker[AsyncSession]:
    db_path = state_db_path(change_dir).resolve()
    factory = _session_factories.get(db_path)
    if factory is not None:
        return factory

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", echo=False, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    _engines[db_path] = engine
    _session_factories[db_path] = factory
    return factory


@asynccontextmanager
async def get_session(change_dir: Path) -> AsyncGenerator[AsyncSession]:
    """Async context manager for a change's database session."""
    factory = await _get_factory(change_dir)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engines() -> None:
    """Close all cached engines (used by the CLI on exit and by tests)."""
    for engine in _engines.values():
        await engine.dispose()
    _engines.clear()
    _session_factories.clear()


# =============================================================================
# Change Operations
# =============================================================================


async def create_change(session: AsyncSession, change_id: str, description: str = "") -> Change:
    change = Change(id=change_id, description=description, phase="proposed", iteration=0)
    session.add(change)
    await session.flush()
    return change


async def get_change(session: AsyncSession, change_id: str) -> Change | None:
    result = await session.execute(select(Change).where(Change.id == change_id))
    return result.scalar_one_or_none()


async def require_change(session: AsyncSession, change_id: str) -> Change:
    change = await get_change(session, change_id)
    if change is None:
        raise ChangeNotFoundError(f"Change not found: {change_id}")
    return change


# =============================================================================
# Review Operations
# =============================================================================


async def add_review(
    session: AsyncSession,
    change: Change,
    *,
    artifact: str,
    kind: str,
    verdict: str,
    issues: list[dict[str, Any]],
    raw_text: str,
    iteration: int,
) -> ReviewLog:
    review = ReviewLog(
        change_id=change.id,
        artifact=artifact,
        kind=kind,
        verdict=verdict,
        issues=issues,
        raw_text=raw_text,
        iteration=iteration,
    )
    session.add(review)
    await session.flush()
    return review


async def get_latest_review(
    session: AsyncSession, change_id: str, *, kind: str | None = None, artifact: str | None = None
) -> ReviewLog | None:
    stmt = select(ReviewLog).where(ReviewLog.change_id == change_id)
    if kind is not None:
        stmt = stmt.where(ReviewLog.kind == kind)
    if artifact is not None:
        stmt = stmt.where(ReviewLog.artifact == artifact)
    result = await session.execute(stmt.order_by(desc(ReviewLog.id)).limit(1))
    return result.scalar_one_or_none()


async def count_reviews(session: AsyncSession, change_id: str, *, kind: str | None = None) -> int:
    stmt = select(func.count(ReviewLog.id)).where(ReviewLog.change_id == change_id)
    if kind is not None:
        stmt = stmt.where(ReviewLog.kind == kind)
    result = await session.execute(stmt)
    return int(result.scalar_one())


# =============================================================================
# Usage Operations
# =============================================================================


async def get_usage_logs(session: AsyncSession, change_id: str) -> list[UsageLog]:
    result = await session.execute(
        select(UsageLog).where(UsageLog.change_id == change_id).order_by(UsageLog.id)
    )
    return list(result.scalars().all())


# =============================================================================
# Execution Log
# =============================================================================


async def log_event(
    session: AsyncSession,
    change_id: str,
    step: str,
    event: str,
    *,
    message: str | None = None,
    details: dict[str, Any] | None = None,
    duration_ms: int | None = None,
) -> ExecutionLog:
    entry = ExecutionLog(
        change_id=change_id,
        step=step,
        event=event,
        message=message,
        details=details or {},
        duration_ms=duration_ms,
    )
    session.add(entry)
    await session.flush()
    return entry


async def get_execution_logs(session: AsyncSession, change_id: str, limit: int = 50) -> list[ExecutionLog]:
    result = await session.execute(
        select(ExecutionLog)
        .where(ExecutionLog.change_id == change_id)
        .order_by(desc(ExecutionLog.id))
        .limit(limit)
    )
    return list(result.scalars().all())
