"""Result models returned across the service boundary to the bot and the web API."""
from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, Field

from aura_rewards.errors import AuraError, ErrorKind


class TransferResult(BaseModel):
    """
    Outcome of a single transfer or mint. Exactly one on-chain transaction was
    submitted when tx_hash is set; failures carry a typed error_kind instead of
    a raw provider exception.
    """

    success: bool
    tx_hash: Optional[str] = Field(None, description="Transaction hash once submitted")
    gas_used: Optional[int] = Field(None, description="Gas consumed by the confirmed transaction")
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    amount: Optional[str] = Field(None, description="Human-scaled decimal string")
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = Field(None, description="Human-readable failure message")
    attempted: Optional[str] = Field(None, description="Requested amount on InsufficientBalance")
    available: Optional[str] = Field(None, description="Queried balance on InsufficientBalance")

    @classmethod
    def failure(cls, exc: AuraError, **extra) -> "TransferResult":
        return cls(
            success=False,
            error_kind=exc.kind,
            error=exc.message,
            attempted=getattr(exc, "attempted", None),
            available=getattr(exc, "available", None),
            **extra,
        )


class LeaderboardEntry(BaseModel):
    rank_position: int
    total_messages: int
    telegram_user_id: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class UserRank(BaseModel):
    rank_position: int
    total_messages: int
    total_participants: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def percentile(self) -> float:
        """Share of participants ranked at or below this user, 0-100."""
        if self.total_participants <= 0:
            return 0.0
        return round((self.total_participants - self.rank_position + 1) / self.total_participants * 100, 1)


class ChestOpening(BaseModel):
    reward: int = Field(ge=0)
    day: date


class QuestStatus(BaseModel):
    day: date
    completed: bool = False
    completed_at: Optional[datetime] = None
    eligible: bool = False
    opened: bool = False
    reward_amount: int = 0
    opened_at: Optional[datetime] = None
    transaction_hash: Optional[str] = None
    message_count: int = 0

    @property
    def claimable(self) -> bool:
        return self.opened and self.reward_amount > 0 and not self.transaction_hash


class QuestHistoryEntry(BaseModel):
    quest_date: date
    completed: bool
    completed_at: Optional[datetime] = None
    opened: bool = False
    reward_amount: int = 0
    opened_at: Optional[datetime] = None
    transaction_hash: Optional[str] = None
