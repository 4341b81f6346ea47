"""
quizstore record stores
"""

from quizstore.services.attempts import AttemptStore
from quizstore.services.products import ProductStore
from quizstore.services.questions import QuestionStore
from quizstore.services.streaks import StreakStore
from quizstore.services.users import UserStore

__all__ = [
    "AttemptStore",
    "ProductStore",
    "QuestionStore",
    "StreakStore",
    "UserStore",
]
