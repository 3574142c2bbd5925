from billwatch.ai.prompts.pattern_split import PATTERN_SPLIT_SYSTEM, PATTERN_SPLIT_USER

__all__ = [
    "PATTERN_SPLIT_SYSTEM",
    "PATTERN_SPLIT_USER",
]
