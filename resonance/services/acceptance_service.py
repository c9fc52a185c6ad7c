"""
Resonance — Match Acceptance, Confirmation & Decline

Accept
  The caller's flag is set on both rows of the pair: ``side_a_accepted``
  on the row anchored in the caller's session, ``side_b_accepted`` on the
  row pointing at the caller.  Once both flags are set the pair is
  confirmed.

Confirm
  A compare-and-set ``UPDATE ... WHERE status = PENDING AND both flags``
  moves the pair to CONFIRMED.  Only the request whose update changed rows
  creates the PUBLIC relationship (or reuses one that already links the
  users in either direction), so concurrent acceptances by both users
  produce exactly one confirmation and one relationship.  The pair rows
  are locked ``FOR UPDATE`` in id order first so the two acceptances
  serialise instead of deadlocking.

Decline
  Terminal.  Both rows move to EXPIRED with ``expires_at = now``.

UserMatchHistory upserts and push notifications run after the lifecycle
transaction has committed and never fail the operation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from resonance.config import Settings, get_settings
from resonance.database import run_in_transaction
from resonance.models.matching import MatchingSession, MatchResult, MatchStatus, MatchType
from resonance.models.relationship import RelationLevel
from resonance.schemas.match import MatchAcceptanceResponse
from resonance.services.collaborators import RelationshipStore
from resonance.services.errors import InvalidStateError, NotAuthorizedError, NotFoundError
from resonance.services.match_history import record_decisions
from resonance.services.notification_service import NotificationDispatcher
from resonance.utils.clock import ensure_utc, utcnow

logger = structlog.get_logger("resonance.acceptance_service")

_TERMINAL = (MatchStatus.EXPIRED, MatchStatus.DECLINED)


@dataclass
class _Outcome:
    match_id: uuid.UUID
    owner_id: uuid.UUID
    matched_user_id: uuid.UUID
    status: MatchStatus
    relationship_id: uuid.UUID | None = None
    confirmed_now: bool = False
    changed: bool = True


class AcceptanceService:
    """Accept / confirm / decline transitions for a match pair."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: NotificationDispatcher,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()

    # ── Public API ────────────────────────────────────────────────────────

    async def accept_match(
        self, user_id: uuid.UUID, match_id: uuid.UUID
    ) -> MatchAcceptanceResponse:
        """Record *user_id*'s acceptance and confirm the pair if mutual.

        Raises
        ------
        NotFoundError
            No such match.
        NotAuthorizedError
            The caller is neither side of the match.
        InvalidStateError
            The match is expired, declined or past its expiry time.
        """
        outcome = await run_in_transaction(
            self._session_factory,
            lambda db: self._accept(db, user_id, match_id),
            operation="accept_match",
        )

        other_id = _other_side(outcome, user_id)
        if outcome.confirmed_now:
            await self._after_confirmation(outcome)
            message = "Match confirmed! You can now start a conversation."
        elif outcome.status == MatchStatus.CONFIRMED:
            message = "Match already confirmed."
        else:
            self._dispatcher.match_status_changed(
                other_id,
                {
                    "match_id": str(outcome.match_id),
                    "status": outcome.status.value,
                    "accepted_by": str(user_id),
                },
            )
            message = "Match accepted! Waiting for the other user to accept."

        logger.info(
            "match_accepted",
            match_id=str(match_id),
            user_id=str(user_id),
            status=outcome.status.value,
            confirmed_now=outcome.confirmed_now,
        )
        return MatchAcceptanceResponse(
            success=True,
            match_status=outcome.status,
            relationship_id=outcome.relationship_id,
            message=message,
        )

    async def confirm_match(self, match_id: uuid.UUID) -> MatchAcceptanceResponse:
        """Confirm a pair whose two flags are already set.

        Idempotent: confirming an already CONFIRMED pair returns its
        relationship and creates nothing.
        """
        async def _confirm(db: AsyncSession) -> _Outcome:
            match = await self._load_match(db, match_id)
            outcome = _Outcome(
                match_id=match.id,
                owner_id=match.session.user_id,
                matched_user_id=match.matched_user_id,
                status=match.status,
            )
            rows = await self._lock_pair(db, match.pair_id)
            status = _pair_status(rows)
            if status == MatchStatus.CONFIRMED:
                return await self._existing_confirmation(db, outcome)
            if status != MatchStatus.PENDING:
                raise InvalidStateError(f"Match {match_id} is {status.value}")
            if not all(r.side_a_accepted and r.side_b_accepted for r in rows):
                raise InvalidStateError(f"Match {match_id} has not been accepted by both users")
            return await self._confirm_pair(db, match.pair_id, outcome)

        outcome = await run_in_transaction(
            self._session_factory, _confirm, operation="confirm_match"
        )
        if outcome.confirmed_now:
            await self._after_confirmation(outcome)
        return MatchAcceptanceResponse(
            success=True,
            match_status=outcome.status,
            relationship_id=outcome.relationship_id,
            message="Match confirmed.",
        )

    async def decline_match(self, user_id: uuid.UUID, match_id: uuid.UUID) -> None:
        """Decline the pair on behalf of *user_id*.

        Declining an already expired match leaves the match rows and any
        existing history row untouched.
        """
        async def _decline(db: AsyncSession) -> _Outcome:
            match = await self._load_match(db, match_id)
            _authorize(match, user_id)
            outcome = _Outcome(
                match_id=match.id,
                owner_id=match.session.user_id,
                matched_user_id=match.matched_user_id,
                status=MatchStatus.EXPIRED,
            )
            await self._lock_pair(db, match.pair_id)
            result = await db.execute(
                update(MatchResult)
                .where(
                    MatchResult.pair_id == match.pair_id,
                    MatchResult.status.not_in(_TERMINAL),
                )
                .values(status=MatchStatus.EXPIRED, expires_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            outcome.changed = result.rowcount > 0
            return outcome

        outcome = await run_in_transaction(
            self._session_factory, _decline, operation="decline_match"
        )
        other_id = _other_side(outcome, user_id)

        # A repeated decline only fills in a missing history row; it never
        # overwrites the decision recorded for the pair.
        await record_decisions(
            self._session_factory,
            [(user_id, other_id)],
            MatchType.DECLINED,
            overwrite=outcome.changed,
        )

        if outcome.changed:
            payload = {
                "match_id": str(outcome.match_id),
                "status": MatchStatus.EXPIRED.value,
                "declined_by": str(user_id),
            }
            self._dispatcher.match_status_changed(user_id, payload)
            self._dispatcher.match_status_changed(other_id, payload)

        logger.info(
            "match_declined",
            match_id=str(match_id),
            user_id=str(user_id),
            changed=outcome.changed,
        )

    async def check_match_confirmation(self, match_id: uuid.UUID) -> bool:
        """True iff both sides have accepted.  False for unknown matches."""
        async def _check(db: AsyncSession) -> bool:
            result = await db.execute(select(MatchResult).where(MatchResult.id == match_id))
            match = result.scalar_one_or_none()
            if match is None:
                return False
            return bool(match.side_a_accepted and match.side_b_accepted)

        return await run_in_transaction(
            self._session_factory, _check, operation="check_match_confirmation"
        )

    # ── Transaction bodies ────────────────────────────────────────────────

    async def _accept(
        self, db: AsyncSession, user_id: uuid.UUID, match_id: uuid.UUID
    ) -> _Outcome:
        match = await self._load_match(db, match_id)
        _authorize(match, user_id)

        outcome = _Outcome(
            match_id=match.id,
            owner_id=match.session.user_id,
            matched_user_id=match.matched_user_id,
            status=match.status,
        )

        # Status and expiry are only trusted once read under the pair lock.
        rows = await self._lock_pair(db, match.pair_id)
        status = _pair_status(rows)
        if status == MatchStatus.CONFIRMED:
            return await self._existing_confirmation(db, outcome)
        if status != MatchStatus.PENDING:
            raise InvalidStateError(
                f"Match {match_id} is {status.value} and can no longer be accepted"
            )
        now = utcnow()
        if any(ensure_utc(r.expires_at) <= now for r in rows):
            raise InvalidStateError(f"Match {match_id} has expired")

        # Side A: rows anchored in one of the caller's sessions.
        await db.execute(
            update(MatchResult)
            .where(
                MatchResult.pair_id == match.pair_id,
                MatchResult.status == MatchStatus.PENDING,
                MatchResult.session_id.in_(
                    select(MatchingSession.id).where(MatchingSession.user_id == user_id)
                ),
            )
            .values(side_a_accepted=True)
            .execution_options(synchronize_session=False)
        )
        # Side B: rows pointing at the caller.
        await db.execute(
            update(MatchResult)
            .where(
                MatchResult.pair_id == match.pair_id,
                MatchResult.status == MatchStatus.PENDING,
                MatchResult.matched_user_id == user_id,
            )
            .values(side_b_accepted=True)
            .execution_options(synchronize_session=False)
        )

        rows = await self._load_pair(db, match.pair_id)
        status = _pair_status(rows)
        if status == MatchStatus.CONFIRMED:
            return await self._existing_confirmation(db, outcome)
        if status != MatchStatus.PENDING:
            raise InvalidStateError(
                f"Match {match_id} became {status.value} before it could be accepted"
            )
        if all(r.side_a_accepted and r.side_b_accepted for r in rows):
            return await self._confirm_pair(db, match.pair_id, outcome)
        return outcome

    async def _confirm_pair(
        self, db: AsyncSession, pair_id: uuid.UUID, outcome: _Outcome
    ) -> _Outcome:
        now = utcnow()
        result = await db.execute(
            update(MatchResult)
            .where(
                MatchResult.pair_id == pair_id,
                MatchResult.status == MatchStatus.PENDING,
                MatchResult.side_a_accepted.is_(True),
                MatchResult.side_b_accepted.is_(True),
            )
            .values(status=MatchStatus.CONFIRMED, confirmed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Lost the compare-and-set: either another request confirmed the
            # pair or a decline retired it.
            status = _pair_status(await self._load_pair(db, pair_id))
            if status != MatchStatus.CONFIRMED:
                raise InvalidStateError(
                    f"Match {outcome.match_id} is {status.value} and cannot be confirmed"
                )
            return await self._existing_confirmation(db, outcome)

        outcome.status = MatchStatus.CONFIRMED
        store = RelationshipStore(db)
        relationship = await store.find_relationship(outcome.owner_id, outcome.matched_user_id)
        if relationship is None:
            relationship = await store.create_relationship(
                outcome.owner_id, outcome.matched_user_id, RelationLevel.PUBLIC
            )
            logger.info(
                "relationship_created",
                relationship_id=str(relationship.id),
                pair_id=str(pair_id),
            )
        else:
            logger.info(
                "relationship_reused",
                relationship_id=str(relationship.id),
                pair_id=str(pair_id),
            )

        outcome.relationship_id = relationship.id
        outcome.confirmed_now = True
        return outcome

    async def _existing_confirmation(self, db: AsyncSession, outcome: _Outcome) -> _Outcome:
        relationship = await RelationshipStore(db).find_relationship(
            outcome.owner_id, outcome.matched_user_id
        )
        if relationship is None:
            logger.warning(
                "confirmed_match_without_relationship", match_id=str(outcome.match_id)
            )
        outcome.status = MatchStatus.CONFIRMED
        outcome.relationship_id = relationship.id if relationship else None
        outcome.changed = False
        return outcome

    async def _after_confirmation(self, outcome: _Outcome) -> None:
        a, b = outcome.owner_id, outcome.matched_user_id
        await record_decisions(self._session_factory, [(a, b), (b, a)], MatchType.ACCEPTED)

        payload = {
            "match_id": str(outcome.match_id),
            "status": MatchStatus.CONFIRMED.value,
            "relationship_id": str(outcome.relationship_id) if outcome.relationship_id else None,
        }
        self._dispatcher.match_confirmed(a, payload)
        self._dispatcher.match_confirmed(b, payload)

    # ── Loading helpers ───────────────────────────────────────────────────

    @staticmethod
    async def _load_match(db: AsyncSession, match_id: uuid.UUID) -> MatchResult:
        result = await db.execute(select(MatchResult).where(MatchResult.id == match_id))
        match = result.scalar_one_or_none()
        if match is None:
            raise NotFoundError(f"Match {match_id} not found")
        return match

    @staticmethod
    async def _lock_pair(db: AsyncSession, pair_id: uuid.UUID) -> list[MatchResult]:
        result = await db.execute(
            select(MatchResult)
            .where(MatchResult.pair_id == pair_id)
            .order_by(MatchResult.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _load_pair(db: AsyncSession, pair_id: uuid.UUID) -> list[MatchResult]:
        result = await db.execute(
            select(MatchResult)
            .where(MatchResult.pair_id == pair_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())


def _authorize(match: MatchResult, user_id: uuid.UUID) -> None:
    if user_id not in (match.session.user_id, match.matched_user_id):
        raise NotAuthorizedError(f"User {user_id} is not part of match {match.id}")


def _other_side(outcome: _Outcome, user_id: uuid.UUID) -> uuid.UUID:
    return outcome.matched_user_id if outcome.owner_id == user_id else outcome.owner_id


def _pair_status(rows: list[MatchResult]) -> MatchStatus:
    """Collapse the twin rows' statuses, terminal states first."""
    statuses = {r.status for r in rows}
    for status in (*_TERMINAL, MatchStatus.CONFIRMED):
        if status in statuses:
            return status
    return MatchStatus.PENDING
