"""First-to-ahead-by-k voting over sampled candidates.

One voting round: sample N candidates, drop red-flagged ones, cluster the
rest structurally, and let each cluster vote with its size. The leading
cluster is only *reliable* when it beats the runner-up by at least k votes.
The minimal reliable k grows logarithmically with the number of steps a
task needs, which is what :meth:`VotingManager.calculate_optimal_k` encodes.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from makercode.llm.provider import CompletionProvider, Message, ProviderConnectionError
from makercode.maker.clusterer import DEFAULT_SIMILARITY_THRESHOLD, StructuralClusterer
from makercode.maker.errors import CandidateGenerationError, VotingCancelledError
from makercode.maker.types import (
    Candidate,
    Cluster,
    CostEstimate,
    TaskProfile,
    ValidationResult,
    VotingResult,
    VotingStats,
)
from makercode.maker.validator import ResponseValidator
from makercode.tokens import TokenCounter

logger = logging.getLogger(__name__)

DEFAULT_K = 3
DEFAULT_MAX_CANDIDATES = 10
DEFAULT_TEMPERATURE = 0.7
TEMPERATURE_JITTER = 0.1
MIN_K, MAX_K = 2, 10

# Degraded-path confidence when nothing passed validation.
FALLBACK_CONFIDENCE = 0.3
# Candidate validity yield assumed by cost projections.
EXPECTED_VALID_RATIO = 0.7
# Valid-candidate count at which sample-size confidence saturates.
FULL_SAMPLE = 5
CRITICALITY_MULTIPLIER = 1.5


@dataclass
class _ValidCandidate:
    candidate: Candidate
    validation: ValidationResult


class VotingManager:
    """Generate candidates for one prompt and resolve them to a single winner.

    Usage:
        manager = VotingManager(provider)
        result = await manager.vote(messages, TaskProfile(), k=3, max_candidates=5)
        if result.reliable:
            apply(result.winner)
    """

    def __init__(
        self,
        provider: CompletionProvider,
        token_counter: TokenCounter | None = None,
        validator: ResponseValidator | None = None,
        clusterer: StructuralClusterer | None = None,
        default_k: int = DEFAULT_K,
        max_candidates: int = DEFAULT_MAX_CANDIDATES,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.provider = provider
        self.token_counter = token_counter or TokenCounter()
        self.validator = validator or ResponseValidator(self.token_counter)
        self.clusterer = clusterer or StructuralClusterer()
        self.default_k = default_k
        self.max_candidates = max_candidates
        self.similarity_threshold = similarity_threshold
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._rng = rng or random.Random()

    @staticmethod
    def calculate_optimal_k(steps: int, base_reliability: float = 0.7) -> int:
        """Voting margin for a task of *steps* steps, clamped to [2, 10]."""
        base_k = math.ceil(math.log2(max(steps, 0) + 1))
        reliability_factor = max(1.0, 2 * (1 - base_reliability))
        return max(MIN_K, min(MAX_K, math.ceil(base_k * reliability_factor)))

    async def generate_candidates(
        self,
        messages: Sequence[Message],
        count: int,
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[Candidate]:
        """Issue *count* sequential completion requests.

        A failed request is logged and skipped. Connection-level faults and
        cancellation abort the whole batch.
        """
        base_temperature = temperature if temperature is not None else self.temperature
        max_tokens = max_tokens if max_tokens is not None else self.max_tokens
        candidates: list[Candidate] = []

        for i in range(count):
            if cancel is not None and cancel.is_set():
                raise VotingCancelledError(f"Cancelled after {len(candidates)} candidates")

            jitter = self._rng.uniform(-TEMPERATURE_JITTER, TEMPERATURE_JITTER)
            sample_temperature = max(0.1, min(1.0, base_temperature + jitter))
            try:
                response = await self.provider.complete(
                    messages,
                    temperature=sample_temperature,
                    max_tokens=max_tokens,
                    stream=False,
                )
            except ProviderConnectionError:
                raise
            except Exception as e:
                logger.warning("Failed to generate candidate %d: %s", i, e)
                continue

            if not response.content:
                logger.warning("Candidate %d came back empty, skipping", i)
                continue

            token_count = (
                response.usage.completion_tokens
                if response.usage and response.usage.completion_tokens
                else self.token_counter.count(response.content)
            )
            candidates.append(
                Candidate(
                    index=i,
                    content=response.content,
                    temperature=sample_temperature,
                    token_count=token_count,
                )
            )

        return candidates

    async def vote(
        self,
        messages: Sequence[Message],
        task: TaskProfile | None = None,
        *,
        k: int | None = None,
        max_candidates: int | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> VotingResult:
        """Run one first-to-ahead-by-k voting round."""
        task = task or TaskProfile()
        k = k or self.default_k
        max_candidates = max_candidates or self.max_candidates
        logger.info("Voting: k=%d, max_candidates=%d", k, max_candidates)

        candidates = await self.generate_candidates(
            messages,
            max_candidates,
            temperature=temperature,
            max_tokens=max_tokens,
            cancel=cancel,
        )
        if not candidates:
            raise CandidateGenerationError("Failed to generate any candidates")
        logger.info("Generated %d candidates", len(candidates))

        validations = [self.validator.validate(c.content, task) for c in candidates]
        valid: list[_ValidCandidate] = []
        for candidate, validation in zip(candidates, validations):
            if validation.valid:
                valid.append(_ValidCandidate(candidate, validation))
            else:
                logger.warning("Rejected candidate %d: %s", candidate.index, validation.summary)

        if not valid:
            logger.warning("All %d candidates failed validation", len(candidates))
            best = max(range(len(candidates)), key=lambda i: validations[i].confidence)
            return VotingResult(
                winner=candidates[best].content,
                confidence=FALLBACK_CONFIDENCE,
                voting_stats=VotingStats(
                    total_candidates=len(candidates),
                    valid_candidates=0,
                    cluster_count=0,
                    winner_votes=0,
                    runner_up_votes=0,
                    margin=0,
                    votes_needed=k,
                    reliable=False,
                ),
                warning="All candidates failed validation - returning least bad option",
            )

        logger.info("%d/%d candidates passed validation", len(valid), len(candidates))

        if len(valid) == 1:
            only = valid[0]
            return VotingResult(
                winner=only.candidate.content,
                confidence=only.validation.confidence,
                voting_stats=VotingStats(
                    total_candidates=len(candidates),
                    valid_candidates=1,
                    cluster_count=1,
                    winner_votes=1,
                    runner_up_votes=0,
                    margin=1,
                    votes_needed=k,
                    reliable=False,
                ),
                warning="Only one valid candidate - no voting performed",
            )

        clusters = self.clusterer.cluster(
            [v.candidate.content for v in valid], self.similarity_threshold
        )
        for i, cluster in enumerate(clusters, start=1):
            logger.debug(
                "Cluster %d: %d members (avg similarity %.2f)",
                i,
                cluster.size,
                cluster.avg_similarity,
            )

        ranked = sorted(clusters, key=lambda c: c.size, reverse=True)
        winner = ranked[0]
        runner_up_votes = ranked[1].size if len(ranked) > 1 else 0
        margin = winner.size - runner_up_votes
        reliable = margin >= k
        confidence = self._confidence(winner, margin, k, len(valid))

        warning = None
        if reliable:
            logger.info("Winner found (margin %d >= k %d)", margin, k)
        else:
            warning = f"Margin ({margin}) below threshold (k={k}) - result may be unreliable"
            logger.warning("No clear winner: margin %d < k %d", margin, k)

        return VotingResult(
            winner=winner.representative,
            confidence=confidence,
            voting_stats=VotingStats(
                total_candidates=len(candidates),
                valid_candidates=len(valid),
                cluster_count=len(clusters),
                winner_votes=winner.size,
                runner_up_votes=runner_up_votes,
                margin=margin,
                votes_needed=k,
                reliable=reliable,
            ),
            warning=warning,
            clusters=clusters,
        )

    @staticmethod
    def _confidence(winner: Cluster, margin: int, k: int, valid_count: int) -> float:
        margin_confidence = min(1.0, margin / k)
        sample_confidence = min(1.0, valid_count / FULL_SAMPLE)
        confidence = (
            0.5 * margin_confidence + 0.3 * winner.avg_similarity + 0.2 * sample_confidence
        )
        return max(0.1, min(1.0, confidence))

    # ── Derived modes ────────────────────────────────────────────────────

    async def adaptive_vote(
        self,
        messages: Sequence[Message],
        task: TaskProfile | None = None,
        **options: Any,
    ) -> VotingResult:
        """Pick k from the task's size and criticality, and size the pool to match."""
        task = task or TaskProfile()
        criticality = CRITICALITY_MULTIPLIER if task.critical else 1.0
        k = math.ceil(
            self.calculate_optimal_k(task.estimated_steps or 1, task.base_reliability) * criticality
        )
        min_candidates = max(k + 2, 5)
        max_candidates = min(min_candidates * 2, self.max_candidates)
        logger.info("Adaptive voting: estimated steps %d, k=%d", task.estimated_steps, k)
        return await self.vote(
            messages, task, **{**options, "k": k, "max_candidates": max_candidates}
        )

    async def quick_vote(
        self,
        messages: Sequence[Message],
        task: TaskProfile | None = None,
        **options: Any,
    ) -> VotingResult:
        """Single cheap round for low-stakes steps."""
        return await self.vote(messages, task, **{**options, "k": 2, "max_candidates": 3})

    async def reliable_vote(
        self,
        messages: Sequence[Message],
        task: TaskProfile | None = None,
        **options: Any,
    ) -> VotingResult:
        """High-margin round for critical steps."""
        steps = task.estimated_steps if task and task.estimated_steps else 10
        k = max(5, self.calculate_optimal_k(steps))
        return await self.vote(messages, task, **{**options, "k": k, "max_candidates": 10})

    @staticmethod
    def estimate_cost(k: int, max_candidates: int, avg_tokens: int = 200) -> CostEstimate:
        """Project the cost of a round without running it."""
        return CostEstimate(
            k=k,
            max_candidates=max_candidates,
            expected_valid_candidates=max_candidates * EXPECTED_VALID_RATIO,
            total_completion_tokens=max_candidates * avg_tokens,
            scaling_factor=math.log2(k + 1),
        )
