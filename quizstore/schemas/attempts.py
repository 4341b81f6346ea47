"""Question attempt schema"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from quizstore.utils.clock import to_key_timestamp


def normalize_attempt_id(value: Union[str, datetime]) -> str:
    """
    Key form of an attempt id

    Raises:
        ValueError: value is not an ISO timestamp
    """
    if isinstance(value, datetime):
        return to_key_timestamp(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValueError("attempt_id must be a valid ISO timestamp")
    return to_key_timestamp(parsed)


class Attempt(BaseModel):
    """One answer submission; attempt_id is the submission timestamp"""
    attempt_id: str
    user_id: str = Field(..., min_length=1)
    question_id: str = Field(..., min_length=1)
    category: str
    timestamp_started: datetime
    timestamp_submitted: datetime
    response_time_ms: int = Field(..., ge=0)
    selected_choice_index: int = Field(..., ge=0)
    is_correct: bool
    attempt_number_for_question: int = Field(default=1, ge=1)
    reviewed_explanation_ms: Optional[int] = None
    retry_interval_hours: Optional[float] = None

    @field_validator("attempt_id", mode="before")
    @classmethod
    def check_attempt_id(cls, value):
        return normalize_attempt_id(value)
