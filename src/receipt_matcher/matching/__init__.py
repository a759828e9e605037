"""Match scoring of candidate documents against bank transactions."""

from receipt_matcher.matching.scorer import (
    RECEIPT_KEYWORDS,
    MatchScorer,
    MatchSignal,
    ScoreCandidate,
    ScoreResult,
)

__all__ = ["MatchScorer", "MatchSignal", "ScoreCandidate", "ScoreResult", "RECEIPT_KEYWORDS"]
