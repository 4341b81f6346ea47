"""User and leaderboard schemas"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator


class AnswerCounts(BaseModel):
    questions_answered: int = Field(default=0, ge=0)
    questions_correct: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_correct_not_above_answered(self):
        if self.questions_correct > self.questions_answered:
            raise ValueError("questions_correct cannot exceed questions_answered")
        return self


class CategoryStats(AnswerCounts):
    pass


class UserStats(AnswerCounts):
    categories: Dict[str, CategoryStats] = Field(default_factory=dict)


class User(BaseModel):
    """User record"""
    user_id: str = Field(..., min_length=1)
    display_name: str
    created_at: Optional[datetime] = None
    stats: UserStats = Field(default_factory=UserStats)


class UserStatsUpdate(BaseModel):
    """Partial stats; omitted fields keep their stored value"""
    questions_answered: Optional[int] = Field(default=None, ge=0)
    questions_correct: Optional[int] = Field(default=None, ge=0)
    categories: Optional[Dict[str, CategoryStats]] = None


class UserUpdate(BaseModel):
    """Partial user update"""
    user_id: str = Field(..., min_length=1)
    display_name: Optional[str] = None
    stats: Optional[UserStatsUpdate] = None


class LeaderboardEntry(BaseModel):
    user_id: str
    display_name: str
    questions_correct: int
