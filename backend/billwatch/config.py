"""
Application configuration using Pydantic settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict

from dataclasses import dataclass, fields
from typing import FrozenSet, List, Optional


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_name: str = "Billwatch"

    # Database
    database_url: str = "sqlite:///./data/db.sqlite"

    # AI Provider
    ai_provider: str = "openrouter"  # openrouter, ollama, openai, anthropic
    ai_model: str = "anthropic/claude-3-haiku"
    ai_base_url: Optional[str] = None  # For Ollama: http://localhost:11434

    # API Keys (optional based on provider)
    openrouter_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None

    # AI Feature Flags
    ai_split_enabled: bool = True
    ai_split_timeout_seconds: float = 15.0
    ai_calls_per_pause: int = 5
    ai_pause_seconds: float = 1.0

    # Transaction feed
    transaction_page_size: int = 1000

    # Deduplication
    dedup_window_days: int = 5
    dedup_amount_ratio: float = 0.2
    dedup_amount_floor: float = 5.0

    # Detection gates
    min_occurrences: int = 3
    active_grace_days: int = 60
    regularity_tolerance: float = 0.5
    regularity_min_ratio: float = 0.4
    consistent_cv: float = 0.35
    moderate_cv: float = 0.55
    moderate_cv_min_occurrences: int = 5
    category_override_cv: float = 0.10

    # Pattern splitting
    cluster_gap_ratio: float = 0.5
    split_amount_ratio: float = 0.5

    # Lifecycle tracking
    lifecycle_match_window_days: int = 3
    lifecycle_amount_tolerance: float = 0.10

    # Scan-all-users worker pool
    scan_max_concurrency: int = 4

    # Categories that are regular spending rather than bills
    non_bill_categories: List[str] = [
        "dining", "restaurants", "fast food", "food & drink", "food and drink",
        "groceries", "grocery", "supermarkets",
        "gas", "gas stations", "fuel",
        "shopping", "retail", "clothing", "apparel",
        "recreation",
        "travel", "transportation", "rideshare",
        "personal care", "beauty",
        "coffee shops", "coffee",
        "home improvement",
        "gifts",
    ]

    # Dining chains rejected even when the category tag is missing
    known_restaurants: List[str] = [
        "chick-fil-a", "wendy's", "mcdonald's", "taco bell", "dunkin' donuts",
        "starbucks", "tropical smoothie cafe", "little caesar's",
    ]

    # Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    frontend_url: str = "http://localhost:5173"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


# Global settings instance
settings = Settings()


@dataclass(frozen=True)
class DetectionConfig:
    """Thresholds used by one detection or lifecycle run.

    Built from `Settings` by `from_settings`, which is the only place the
    default values live.
    """

    dedup_window_days: int
    dedup_amount_ratio: float
    dedup_amount_floor: float
    min_occurrences: int
    active_grace_days: int
    regularity_tolerance: float
    regularity_min_ratio: float
    consistent_cv: float
    moderate_cv: float
    moderate_cv_min_occurrences: int
    category_override_cv: float
    cluster_gap_ratio: float
    split_amount_ratio: float
    lifecycle_match_window_days: int
    lifecycle_amount_tolerance: float
    non_bill_categories: FrozenSet[str]
    known_restaurants: FrozenSet[str]

    @classmethod
    def from_settings(cls, source: Optional[Settings] = None) -> "DetectionConfig":
        source = source or settings
        values = {f.name: getattr(source, f.name) for f in fields(cls)}
        values["non_bill_categories"] = frozenset(c.strip().lower() for c in source.non_bill_categories)
        values["known_restaurants"] = frozenset(r.strip().lower() for r in source.known_restaurants)
        return cls(**values)
