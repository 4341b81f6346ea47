"""
quizstore - persistence layer for the quiz platform
Record stores built on an atomic transactional key-value engine
"""

__version__ = "1.0.0"
