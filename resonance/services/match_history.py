"""
Resonance — UserMatchHistory bookkeeping.

History rows permanently exclude a pair from discovery once either side has
made a decision.  Writes are upserts keyed on (user_id, matched_user_id) with
last-write-wins semantics, and are always best-effort: a failure is logged
and never fails the accept/decline that triggered it.
"""

from __future__ import annotations

import uuid
from typing import Iterable

import structlog
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from resonance.database import run_in_transaction
from resonance.models.matching import MatchType, UserMatchHistory
from resonance.utils.clock import utcnow

logger = structlog.get_logger("resonance.match_history")

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


async def upsert_decision(
    db_session: AsyncSession,
    user_id: uuid.UUID,
    matched_user_id: uuid.UUID,
    match_type: MatchType,
    overwrite: bool = True,
) -> None:
    """Insert the history row for ``user_id -> matched_user_id``.

    An existing row is overwritten when *overwrite* is set and left as is
    otherwise.
    """
    dialect = db_session.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise NotImplementedError(f"No upsert support for dialect {dialect!r}")

    now = utcnow()
    stmt = insert(UserMatchHistory).values(
        id=uuid.uuid4(),
        user_id=user_id,
        matched_user_id=matched_user_id,
        match_type=match_type,
        created_at=now,
    )
    if overwrite:
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "matched_user_id"],
            set_={"match_type": stmt.excluded.match_type, "updated_at": now},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["user_id", "matched_user_id"]
        )
    await db_session.execute(stmt)


async def record_decisions(
    session_factory: async_sessionmaker[AsyncSession],
    decisions: Iterable[tuple[uuid.UUID, uuid.UUID]],
    match_type: MatchType,
    overwrite: bool = True,
) -> bool:
    """Upsert every ``(user_id, matched_user_id)`` pair in its own transaction.

    Returns ``True`` on success.  Failures are logged and swallowed.
    """
    pairs = list(decisions)

    async def _write(session: AsyncSession) -> None:
        for user_id, matched_user_id in pairs:
            await upsert_decision(
                session, user_id, matched_user_id, match_type, overwrite=overwrite
            )

    try:
        await run_in_transaction(
            session_factory, _write, operation="record_match_history"
        )
    except Exception:
        logger.exception(
            "match_history_write_failed",
            match_type=match_type.value,
            pairs=[(str(a), str(b)) for a, b in pairs],
        )
        return False

    logger.info("match_history_recorded", match_type=match_type.value, count=len(pairs))
    return True
