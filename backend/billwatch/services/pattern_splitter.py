"""
Splitting of merchants that carry more than one independent bill.

A phone carrier can charge a device installment and a service plan under one
name. Occurrences are clustered by amount, and when two or more clusters
qualify as bills on their own a ClusterSplitAdvisor decides whether they are
tracked separately.
"""

import asyncio
import logging
import statistics as stats_lib
import uuid
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from billwatch.ai.client import AIClient, get_ai_client
from billwatch.ai.prompts import PATTERN_SPLIT_SYSTEM, PATTERN_SPLIT_USER
from billwatch.config import settings
from billwatch.schemas.split import ClusterLabel, ClusterSummary, SplitVerdict
from billwatch.services.deduplication_service import Occurrence, sort_occurrences

logger = logging.getLogger(__name__)

SPLIT_GROUP_NAMESPACE = uuid.UUID("6f1c2a9e-4d43-4c1b-9a57-0d3e8b7c5f21")


def cluster_by_amount(occurrences: Sequence[Occurrence], gap_ratio: float = 0.5) -> List[List[Occurrence]]:
    """
    Partition occurrences into amount clusters.

    Amounts are walked in ascending order and a new cluster starts whenever an
    amount exceeds the running mean of the current cluster by more than
    `gap_ratio`. Clusters come back in ascending amount order, each sorted by
    date.
    """
    if not occurrences:
        return []

    by_amount = sorted(occurrences, key=lambda o: (o.amount, o.date, o.transaction_id or ""))
    clusters = [[by_amount[0]]]
    for occurrence in by_amount[1:]:
        current = clusters[-1]
        mean = stats_lib.fmean(o.amount for o in current)
        if occurrence.amount > mean * (1 + gap_ratio):
            clusters.append([occurrence])
        else:
            current.append(occurrence)
    return [sort_occurrences(cluster) for cluster in clusters]


def split_group_id(user_id: str, merchant_key: str) -> str:
    """Stable id shared by every bill split from one merchant key."""
    return str(uuid.uuid5(SPLIT_GROUP_NAMESPACE, f"{user_id}:{merchant_key.lower()}"))


def split_display_name(merchant_key: str, label: str) -> str:
    return f"{merchant_key} - {label}"


def describe_cluster(cluster: ClusterSummary) -> str:
    return f"{cluster.frequency.label} ${cluster.amount:.2f}"


class ClusterSplitAdvisor(ABC):
    """Decides whether a merchant's clusters are independent obligations."""

    @abstractmethod
    async def advise(self, merchant: str, clusters: Sequence[ClusterSummary]) -> SplitVerdict:
        """Return a verdict with one label per cluster, in input order."""
        pass


class AmountRatioSplitAdvisor(ClusterSplitAdvisor):
    """Deterministic rule: split when the largest amount exceeds the smallest by more than `ratio`."""

    def __init__(self, ratio: float = 0.5):
        self.ratio = ratio

    async def advise(self, merchant: str, clusters: Sequence[ClusterSummary]) -> SplitVerdict:
        amounts = [c.amount for c in clusters]
        smallest = min(amounts)
        should_split = smallest > 0 and (max(amounts) - smallest) / smallest > self.ratio

        return SplitVerdict(
            should_split=should_split,
            reasoning="Fallback: amount variance analysis",
            patterns=[
                ClusterLabel(description=describe_cluster(c), amount=c.amount, frequency=c.frequency)
                for c in clusters
            ],
        )


class AIClusterSplitAdvisor(ClusterSplitAdvisor):
    """Asks the configured LLM for a split verdict."""

    def __init__(
        self,
        client: Optional[AIClient] = None,
        timeout: Optional[float] = None,
        calls_per_pause: Optional[int] = None,
        pause_seconds: Optional[float] = None
    ):
        self.client = client or get_ai_client()
        self.timeout = settings.ai_split_timeout_seconds if timeout is None else timeout
        self.calls_per_pause = settings.ai_calls_per_pause if calls_per_pause is None else calls_per_pause
        self.pause_seconds = settings.ai_pause_seconds if pause_seconds is None else pause_seconds
        self._calls = 0

    async def _throttle(self):
        if self.calls_per_pause > 0 and self._calls and self._calls % self.calls_per_pause == 0:
            await asyncio.sleep(self.pause_seconds)
        self._calls += 1

    async def advise(self, merchant: str, clusters: Sequence[ClusterSummary]) -> SplitVerdict:
        await self._throttle()

        patterns = "\n".join(
            f"{i + 1}. ${c.amount:.2f} every {c.frequency.value} ({c.occurrence_count} occurrences)"
            for i, c in enumerate(clusters)
        )
        user_prompt = PATTERN_SPLIT_USER.format(merchant=merchant, patterns=patterns)

        result = await asyncio.wait_for(
            self.client.complete_json(
                system_prompt=PATTERN_SPLIT_SYSTEM,
                user_prompt=user_prompt,
                temperature=0.3,
                max_tokens=500,
                timeout=self.timeout
            ),
            timeout=self.timeout,
        )

        verdict = SplitVerdict.model_validate(result)
        if len(verdict.patterns) != len(clusters):
            raise ValueError(
                f"AI returned {len(verdict.patterns)} labels for {len(clusters)} clusters"
            )
        return verdict


class FallbackSplitAdvisor(ClusterSplitAdvisor):
    """Uses `primary` when available and falls back on any failure."""

    def __init__(self, primary: Optional[ClusterSplitAdvisor], fallback: ClusterSplitAdvisor):
        self.primary = primary
        self.fallback = fallback

    async def advise(self, merchant: str, clusters: Sequence[ClusterSummary]) -> SplitVerdict:
        if self.primary is not None:
            try:
                return await self.primary.advise(merchant, clusters)
            except Exception as e:
                logger.warning(f"Split advice for {merchant} failed, using fallback: {e!r}")
        return await self.fallback.advise(merchant, clusters)


def get_split_advisor(split_amount_ratio: Optional[float] = None) -> ClusterSplitAdvisor:
    """Advisor for production runs: AI when configured, amount rule otherwise."""
    ratio = settings.split_amount_ratio if split_amount_ratio is None else split_amount_ratio
    fallback = AmountRatioSplitAdvisor(ratio)

    primary = None
    if settings.ai_split_enabled:
        client = get_ai_client()
        if client.is_configured:
            primary = AIClusterSplitAdvisor(client)
    return FallbackSplitAdvisor(primary, fallback)
