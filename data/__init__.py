"""Data layer – SQLite storage and Pydantic models."""

from data.models import (
    BotAssignmentRecord,
    MessageRecord,
    PromptRecord,
    PromptResponseRecord,
    PromptSource,
    Rubric,
    RoomRecord,
    TokenTransactionRecord,
    TransactionKind,
    TriadRecord,
    TriadStatus,
    UserRecord,
    UserScore,
)
from data.database import ArenaDatabase

__all__ = [
    "ArenaDatabase",
    "BotAssignmentRecord",
    "MessageRecord",
    "PromptRecord",
    "PromptResponseRecord",
    "PromptSource",
    "Rubric",
    "RoomRecord",
    "TokenTransactionRecord",
    "TransactionKind",
    "TriadRecord",
    "TriadStatus",
    "UserRecord",
    "UserScore",
]
