"""Tests for candidate discovery and bidirectional match creation."""
import uuid
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from resonance.config import Settings
from resonance.models import MatchStatus, MatchType, PromptStatus
from resonance.services.discovery_service import calculate_compatibility
from resonance.services.errors import InvalidStateError, NotFoundError
from resonance.services.match_history import record_decisions
from resonance.utils.clock import ensure_utc, utcnow


def _prompt(question, theme_id):
    return SimpleNamespace(question=question, theme_id=theme_id)


class TestCompatibilityScore:
    """Deterministic prompt-vs-prompt scoring."""

    @pytest.fixture
    def settings(self):
        return Settings(_env_file=None)

    def test_same_question_and_theme_clamped(self, settings):
        score, question_match, theme_match = calculate_compatibility(
            _prompt("Q1", "T1"), _prompt("Q1", "T1"), settings
        )
        assert score == 1.0
        assert question_match and theme_match

    def test_same_question_only(self, settings):
        score, question_match, theme_match = calculate_compatibility(
            _prompt("Q1", "T1"), _prompt("Q1", "T2"), settings
        )
        assert score == pytest.approx(0.9)
        assert question_match and not theme_match

    def test_same_theme_only(self, settings):
        score, question_match, theme_match = calculate_compatibility(
            _prompt("Q1", "T1"), _prompt("Q2", "T1"), settings
        )
        assert score == pytest.approx(0.7)
        assert theme_match and not question_match

    def test_no_overlap_gets_base_score(self, settings):
        score, _, _ = calculate_compatibility(_prompt("Q1", "T1"), _prompt("Q2", "T2"), settings)
        assert score == pytest.approx(0.5)

    def test_repeatable(self, settings):
        a, b = _prompt("Q1", "T1"), _prompt("Q1", "T9")
        assert calculate_compatibility(a, b, settings) == calculate_compatibility(a, b, settings)


class TestFindMatches:
    """Discovery end to end against an in-memory database."""

    async def test_creates_both_directions(self, lifecycle, alice_and_bob, load_all_matches, session_for):
        alice, bob, alice_prompt, bob_prompt = alice_and_bob

        before = utcnow()
        summaries = await lifecycle.find_matches(alice.id, alice_prompt.id)

        assert len(summaries) == 1
        summary = summaries[0]
        assert summary.user_profile.id == bob.id
        assert summary.status == MatchStatus.PENDING
        assert summary.compatibility_score == 1.0
        assert summary.user_accepted is False and summary.other_user_accepted is False

        rows = await load_all_matches()
        assert len(rows) == 2
        assert rows[0].pair_id == rows[1].pair_id

        alice_session = await session_for(alice.id, alice_prompt.id)
        bob_session = await session_for(bob.id, bob_prompt.id)
        by_session = {row.session_id: row for row in rows}
        assert by_session[alice_session.id].matched_user_id == bob.id
        assert by_session[bob_session.id].matched_user_id == alice.id

        for row in rows:
            assert row.status == MatchStatus.PENDING
            assert row.compatibility_score == 1.0
            assert row.personality_match is False and row.location_match is False
            expires = ensure_utc(row.expires_at)
            assert before + timedelta(days=3) - timedelta(seconds=5) < expires
            assert expires < utcnow() + timedelta(days=3, seconds=5)

    async def test_rerun_does_not_duplicate(self, lifecycle, alice_and_bob, load_all_matches):
        alice, _, alice_prompt, _ = alice_and_bob
        await lifecycle.find_matches(alice.id, alice_prompt.id)

        second = await lifecycle.find_matches(alice.id, alice_prompt.id)

        assert second == []
        assert len(await load_all_matches()) == 2

    async def test_counterpart_discovery_does_not_duplicate(self, lifecycle, alice_and_bob, load_all_matches):
        alice, bob, alice_prompt, bob_prompt = alice_and_bob
        await lifecycle.find_matches(alice.id, alice_prompt.id)

        assert await lifecycle.find_matches(bob.id, bob_prompt.id) == []
        assert len(await load_all_matches()) == 2

    async def test_unrelated_prompts_are_not_candidates(self, lifecycle, create_user, create_prompt):
        alice = await create_user("alice")
        carol = await create_user("carol")
        alice_prompt = await create_prompt(alice, question="Q1", theme_id="T1")
        await create_prompt(carol, question="Q2", theme_id="T2")

        assert await lifecycle.find_matches(alice.id, alice_prompt.id) == []

    async def test_inactive_candidate_prompts_are_skipped(self, lifecycle, create_user, create_prompt):
        alice = await create_user("alice")
        dave = await create_user("dave")
        alice_prompt = await create_prompt(alice)
        await create_prompt(dave, status=PromptStatus.CANCELLED)

        assert await lifecycle.find_matches(alice.id, alice_prompt.id) == []

    async def test_candidate_cap_applies(self, lifecycle, create_user, create_prompt):
        alice = await create_user("alice")
        alice_prompt = await create_prompt(alice)
        for i in range(7):
            other = await create_user(f"user{i}")
            await create_prompt(other, deployed_at=utcnow() - timedelta(minutes=i))

        summaries = await lifecycle.find_matches(alice.id, alice_prompt.id)

        assert len(summaries) == 5
        names = {s.user_profile.username for s in summaries}
        assert names == {f"user{i}" for i in range(5)}

    async def test_history_excludes_in_both_directions(
        self, lifecycle, session_factory, create_user, create_prompt
    ):
        alice = await create_user("alice")
        bob = await create_user("bob")
        carol = await create_user("carol")
        alice_prompt = await create_prompt(alice)
        await create_prompt(bob)
        await create_prompt(carol)
        await record_decisions(session_factory, [(bob.id, alice.id)], MatchType.DECLINED)

        summaries = await lifecycle.find_matches(alice.id, alice_prompt.id)

        assert [s.user_profile.id for s in summaries] == [carol.id]

    async def test_never_matches_self(self, lifecycle, create_user, create_prompt):
        alice = await create_user("alice")
        old = await create_prompt(alice, deployed_at=utcnow() - timedelta(hours=1))
        current = await create_prompt(alice)

        assert await lifecycle.find_matches(alice.id, current.id) == []
        assert await lifecycle.find_matches(alice.id, old.id) == []

    async def test_unknown_prompt_raises_not_found(self, lifecycle, create_user):
        alice = await create_user("alice")
        with pytest.raises(NotFoundError):
            await lifecycle.find_matches(alice.id, uuid.uuid4())

    async def test_foreign_prompt_raises_invalid_state(self, lifecycle, alice_and_bob):
        alice, _, _, bob_prompt = alice_and_bob
        with pytest.raises(InvalidStateError):
            await lifecycle.find_matches(alice.id, bob_prompt.id)

    async def test_inactive_own_prompt_returns_nothing(self, lifecycle, create_user, create_prompt):
        alice = await create_user("alice")
        bob = await create_user("bob")
        alice_prompt = await create_prompt(alice, status=PromptStatus.EXPIRED)
        await create_prompt(bob)

        assert await lifecycle.find_matches(alice.id, alice_prompt.id) == []

    async def test_one_candidate_failure_does_not_abort_batch(
        self, lifecycle, create_user, create_prompt, load_all_matches
    ):
        alice = await create_user("alice")
        bob = await create_user("bob")
        carol = await create_user("carol")
        alice_prompt = await create_prompt(alice)
        await create_prompt(bob, deployed_at=utcnow() - timedelta(minutes=1))
        await create_prompt(carol, deployed_at=utcnow() - timedelta(minutes=2))

        discovery = lifecycle.discovery
        original = discovery.create_bidirectional_match

        async def flaky(user_id, user_prompt, session_id, candidate):
            if candidate.user_id == bob.id:
                raise RuntimeError("store hiccup")
            return await original(user_id, user_prompt, session_id, candidate)

        with patch.object(discovery, "create_bidirectional_match", side_effect=flaky):
            summaries = await lifecycle.find_matches(alice.id, alice_prompt.id)

        assert [s.user_profile.id for s in summaries] == [carol.id]
        rows = await load_all_matches()
        assert len(rows) == 2
        assert {bob.id}.isdisjoint({r.matched_user_id for r in rows})

    async def test_self_candidate_rejected(self, lifecycle, alice_and_bob, session_for):
        alice, _, alice_prompt, _ = alice_and_bob
        await lifecycle.find_matches(alice.id, alice_prompt.id)
        session = await session_for(alice.id, alice_prompt.id)

        with pytest.raises(InvalidStateError):
            await lifecycle.discovery.create_bidirectional_match(
                alice.id, alice_prompt, session.id, alice_prompt
            )


class TestDiscoveryNotifications:
    """Both users hear about a new match after it is stored."""

    async def test_new_match_pushed_to_both(self, lifecycle, services, registry, transport, alice_and_bob):
        alice, bob, alice_prompt, _ = alice_and_bob
        await registry.register(str(alice.id), "conn-alice")
        await registry.register(str(bob.id), "conn-bob")

        [summary] = await lifecycle.find_matches(alice.id, alice_prompt.id)
        await services.runner.drain()

        alice_events = transport.events_for("conn-alice")
        bob_events = transport.events_for("conn-bob")
        assert [e for e, _ in alice_events] == ["new_match_available"]
        assert [e for e, _ in bob_events] == ["new_match_available"]
        assert alice_events[0][1]["id"] == str(summary.id)
        assert alice_events[0][1]["user_profile"]["id"] == str(bob.id)
        assert bob_events[0][1]["user_profile"]["id"] == str(alice.id)

    async def test_offline_users_do_not_fail_discovery(self, lifecycle, services, transport, alice_and_bob):
        alice, _, alice_prompt, _ = alice_and_bob

        summaries = await lifecycle.find_matches(alice.id, alice_prompt.id)
        await services.runner.drain()

        assert len(summaries) == 1
        assert transport.sent == []
