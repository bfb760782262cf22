"""Smart status: derived lead status from correlated mailbox activity."""

from src.leadsync.status.schemas import (
    CandidateMode,
    EvaluationResult,
    MailMessage,
    SmartStatus,
    StatusPolicy,
)
from src.leadsync.status.evaluator import DerivedStatusEvaluator

__all__ = [
    "CandidateMode",
    "DerivedStatusEvaluator",
    "EvaluationResult",
    "MailMessage",
    "SmartStatus",
    "StatusPolicy",
]
