"""Tests for first-to-ahead-by-k voting."""

from __future__ import annotations

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from makercode.llm.provider import Completion, ProviderConnectionError, ProviderError, Usage
from makercode.maker.errors import CandidateGenerationError, VotingCancelledError
from makercode.maker.types import TaskProfile
from makercode.maker.voting import FALLBACK_CONFIDENCE, VotingManager

MESSAGES = [{"role": "user", "content": "Write an add function"}]

ADD = "def add(a, b):\n    return a + b\n"
REFUSAL = "I'm sorry, I can't help with that"
DISTINCT = [
    "def alpha(a, b, c):\n    return a + b + c\n",
    "class Bravo:\n    def one(self): pass\n    def two(self): pass\n",
    "import os\nimport sys\nfrom json import loads\n",
    "delta = 1\necho = 2\nfoxtrot = 3\n",
    '__all__ = ["golf"]\nhotel = lambda x, y: x * y\n',
]


def _provider(*responses):
    provider = AsyncMock()
    provider.complete.side_effect = [
        r if isinstance(r, Exception) else Completion(r) for r in responses
    ]
    return provider


def _always(content: str):
    provider = AsyncMock()
    provider.complete.side_effect = lambda *args, **kwargs: Completion(content)
    return provider


# ── Optimal k ────────────────────────────────────────────────


class TestOptimalK:
    def test_known_values(self):
        assert VotingManager.calculate_optimal_k(1) == 2
        assert VotingManager.calculate_optimal_k(10) == 4
        assert VotingManager.calculate_optimal_k(1000) == 10

    def test_bounded(self):
        for steps in (0, 1, 5, 100, 10**6):
            assert 2 <= VotingManager.calculate_optimal_k(steps) <= 10

    def test_monotone_in_steps(self):
        ks = [VotingManager.calculate_optimal_k(s) for s in range(1, 2000, 37)]
        assert ks == sorted(ks)

    def test_low_reliability_raises_k(self):
        assert VotingManager.calculate_optimal_k(10, base_reliability=0.3) == 6
        assert VotingManager.calculate_optimal_k(10, base_reliability=0.9) == 4


# ── Voting rounds ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_unanimous_candidates_win_reliably():
    manager = VotingManager(_provider(*[ADD] * 5))
    result = await manager.vote(MESSAGES, k=3, max_candidates=5)

    assert result.winner == ADD
    assert result.reliable is True
    assert result.confidence == pytest.approx(1.0)
    assert result.warning is None
    stats = result.voting_stats
    assert (stats.total_candidates, stats.valid_candidates, stats.cluster_count) == (5, 5, 1)
    assert (stats.winner_votes, stats.runner_up_votes, stats.margin) == (5, 0, 5)
    assert stats.votes_needed == 3


@pytest.mark.asyncio
async def test_divergent_candidates_are_unreliable():
    manager = VotingManager(_provider(*DISTINCT))
    result = await manager.vote(MESSAGES, k=3, max_candidates=5)

    assert result.reliable is False
    assert result.voting_stats.cluster_count == 5
    assert result.voting_stats.margin == 0
    assert result.warning == "Margin (0) below threshold (k=3) - result may be unreliable"
    assert result.confidence == pytest.approx(0.5)
    assert result.winner in DISTINCT


@pytest.mark.asyncio
async def test_refusals_are_filtered_before_voting():
    manager = VotingManager(_provider(ADD, REFUSAL, ADD, ADD, ADD))
    result = await manager.vote(MESSAGES, k=3, max_candidates=5)

    assert result.winner == ADD
    assert result.voting_stats.total_candidates == 5
    assert result.voting_stats.valid_candidates == 4
    assert result.reliable is True


@pytest.mark.asyncio
async def test_single_valid_candidate_skips_voting():
    manager = VotingManager(_provider(REFUSAL, ADD, REFUSAL))
    result = await manager.vote(MESSAGES, k=3, max_candidates=3)

    assert result.winner == ADD
    assert result.reliable is False
    assert result.warning == "Only one valid candidate - no voting performed"
    assert result.voting_stats.winner_votes == 1
    assert result.voting_stats.margin == 1
    assert result.confidence == 1.0


@pytest.mark.asyncio
async def test_all_invalid_returns_least_bad_option():
    responses = [REFUSAL, "As an AI language model, I cannot do that"]
    manager = VotingManager(_provider(*responses))
    result = await manager.vote(MESSAGES, k=3, max_candidates=2)

    assert result.winner in responses
    assert result.confidence == FALLBACK_CONFIDENCE
    assert result.reliable is False
    assert result.voting_stats.valid_candidates == 0
    assert result.voting_stats.votes_needed == 3
    assert result.warning == "All candidates failed validation - returning least bad option"
    assert result.clusters == []


@pytest.mark.asyncio
async def test_result_serialises():
    result = await VotingManager(_provider(ADD, ADD)).vote(MESSAGES, k=2, max_candidates=2)
    data = result.to_dict()
    assert data["winner"] == ADD
    assert data["voting_stats"]["reliable"] is True


# ── Candidate generation ─────────────────────────────────────


@pytest.mark.asyncio
async def test_failed_and_empty_candidates_are_skipped():
    provider = _provider(ProviderError("rate limited"), "", ADD, ADD)
    result = await VotingManager(provider).vote(MESSAGES, k=2, max_candidates=4)

    assert provider.complete.await_count == 4
    assert result.voting_stats.total_candidates == 2
    assert result.reliable is True


@pytest.mark.asyncio
async def test_no_candidates_raises():
    provider = _provider(ProviderError("a"), ProviderError("b"))
    with pytest.raises(CandidateGenerationError):
        await VotingManager(provider).vote(MESSAGES, max_candidates=2)


@pytest.mark.asyncio
async def test_connection_error_aborts_the_round():
    provider = _provider(ADD, ProviderConnectionError("down"), ADD)
    with pytest.raises(ProviderConnectionError):
        await VotingManager(provider).vote(MESSAGES, max_candidates=3)
    assert provider.complete.await_count == 2


@pytest.mark.asyncio
async def test_cancel_before_first_call():
    provider = _always(ADD)
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(VotingCancelledError):
        await VotingManager(provider).vote(MESSAGES, max_candidates=3, cancel=cancel)
    provider.complete.assert_not_awaited()


@pytest.mark.asyncio
async def test_temperatures_are_jittered_and_clamped():
    provider = _always(ADD)
    manager = VotingManager(provider, rng=random.Random(7))

    hot = await manager.generate_candidates(MESSAGES, 6, temperature=1.0)
    cold = await manager.generate_candidates(MESSAGES, 6, temperature=0.0)

    assert all(0.9 <= c.temperature <= 1.0 for c in hot)
    assert all(c.temperature == 0.1 for c in cold)
    sent = [call.kwargs["temperature"] for call in provider.complete.await_args_list]
    assert sent == [c.temperature for c in hot + cold]


@pytest.mark.asyncio
async def test_token_count_prefers_reported_usage():
    provider = AsyncMock()
    provider.complete.side_effect = [
        Completion(ADD, usage=Usage(prompt_tokens=20, completion_tokens=42)),
        Completion(ADD),
    ]
    candidates = await VotingManager(provider).generate_candidates(MESSAGES, 2)
    assert candidates[0].token_count == 42
    assert candidates[1].token_count == 10
    assert [c.index for c in candidates] == [0, 1]


# ── Derived modes ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_quick_vote():
    provider = _always(ADD)
    result = await VotingManager(provider).quick_vote(MESSAGES)
    assert provider.complete.await_count == 3
    assert result.voting_stats.votes_needed == 2


@pytest.mark.asyncio
async def test_fixed_modes_override_caller_margin():
    provider = _always(ADD)
    result = await VotingManager(provider).quick_vote(
        MESSAGES, k=9, max_candidates=7, temperature=0.2
    )
    assert result.voting_stats.votes_needed == 2
    assert provider.complete.await_count == 3
    temperatures = [c.kwargs["temperature"] for c in provider.complete.await_args_list]
    assert all(t == pytest.approx(0.2, abs=0.11) for t in temperatures)

    provider = _always(ADD)
    result = await VotingManager(provider).reliable_vote(MESSAGES, k=2, max_candidates=3)
    assert result.voting_stats.votes_needed == 5
    assert provider.complete.await_count == 10


@pytest.mark.asyncio
async def test_reliable_vote():
    provider = _always(ADD)
    result = await VotingManager(provider).reliable_vote(MESSAGES)
    assert provider.complete.await_count == 10
    assert result.voting_stats.votes_needed == 5
    assert result.reliable is True


@pytest.mark.asyncio
async def test_adaptive_vote_scales_with_criticality():
    provider = _always(ADD)
    manager = VotingManager(provider, max_candidates=6)
    result = await manager.adaptive_vote(
        MESSAGES, TaskProfile(estimated_steps=10, critical=True)
    )
    assert result.voting_stats.votes_needed == 6
    assert provider.complete.await_count == 6
    assert result.reliable is True


def test_estimate_cost():
    estimate = VotingManager.estimate_cost(3, 10)
    assert estimate.expected_valid_candidates == pytest.approx(7.0)
    assert estimate.total_completion_tokens == 2000
    assert estimate.scaling_factor == pytest.approx(2.0)
    assert estimate.to_dict()["k"] == 3
