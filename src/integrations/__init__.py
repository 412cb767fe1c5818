"""
External integrations for the session engine.

Modules:
- question_api: HTTP Question Store for the study API
"""
from .question_api import HttpQuestionStore

__all__ = ["HttpQuestionStore"]
