"""Streak schema"""

from datetime import datetime

from pydantic import BaseModel, Field


class Streak(BaseModel):
    """Consecutive active windows for one user"""
    user_id: str
    days: int = Field(..., ge=1)
    start_date: datetime
    last_activity: datetime
    expires_on: datetime
