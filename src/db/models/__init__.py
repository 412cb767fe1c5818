# SQLAlchemy models
from .base import Base
from .results import SessionResultRecord

__all__ = [
    "Base",
    "SessionResultRecord",
]
