"""Evaluation – message analysis, moderation, grading, ledger and settlement."""

from evaluation.analysis import MessageAnalysis, MessageAnalyzer, extract_tags, sentiment_score
from evaluation.moderation import (
    MODERATION_FLAGGED,
    MODERATION_UNAVAILABLE,
    ModerationGate,
    ModerationVerdict,
)
from evaluation.grading import (
    NEUTRAL_SCORE,
    RUBRIC_WEIGHTS,
    GradeReport,
    TranscriptGrader,
    weighted_overall,
)
from evaluation.ledger import TokenLedger
from evaluation.lifecycle import EvaluationResult, TriadLifecycleEvaluator, pick_winner

__all__ = [
    "EvaluationResult",
    "GradeReport",
    "MODERATION_FLAGGED",
    "MODERATION_UNAVAILABLE",
    "MessageAnalysis",
    "MessageAnalyzer",
    "ModerationGate",
    "ModerationVerdict",
    "NEUTRAL_SCORE",
    "RUBRIC_WEIGHTS",
    "TokenLedger",
    "TranscriptGrader",
    "TriadLifecycleEvaluator",
    "extract_tags",
    "pick_winner",
    "sentiment_score",
    "weighted_overall",
]
