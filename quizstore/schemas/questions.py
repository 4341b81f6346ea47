"""Question and question report schemas"""

import enum
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class Thumbs(str, enum.Enum):
    UP = "up"
    DOWN = "down"


class QuestionDraft(BaseModel):
    """A question before it has an identity"""
    question_text: str = Field(..., min_length=1)
    choices: List[str] = Field(..., min_length=2, max_length=6)
    correct_answer: int = Field(..., ge=0)
    explanation: str = ""
    category: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_correct_answer(self):
        if self.correct_answer >= len(self.choices):
            raise ValueError(
                f"correct_answer {self.correct_answer} is out of range for {len(self.choices)} choices"
            )
        return self


class Question(QuestionDraft):
    """Stored question; id and content_hash derive from question_text"""
    id: str
    content_hash: str
    created_at: datetime


class QuestionReport(BaseModel):
    """User feedback on a question"""
    question_id: str
    report_id: str
    thumbs: Thumbs
    reason: str = Field(..., max_length=1000)
    reported_at: datetime
    user_id: Optional[str] = None
    resolved_at: Optional[datetime] = None


class QuestionReplace(QuestionDraft):
    """Replacement content for the question currently stored under ``id``"""
    id: str = Field(..., min_length=1)
