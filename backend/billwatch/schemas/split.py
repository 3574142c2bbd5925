"""Pydantic schemas for pattern-split decisions."""

from pydantic import BaseModel, Field
from typing import List

from billwatch.models.detected_bill import Frequency


class ClusterSummary(BaseModel):
    """One amount/cadence cluster observed at a merchant."""
    amount: float
    frequency: Frequency
    occurrence_count: int


class ClusterLabel(BaseModel):
    """Per-cluster entry of a split verdict."""
    description: str = Field(min_length=1)
    amount: float
    frequency: Frequency


class SplitVerdict(BaseModel):
    """Decision whether a merchant's clusters are independent obligations."""
    should_split: bool
    reasoning: str = ""
    patterns: List[ClusterLabel] = []
