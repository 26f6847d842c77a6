"""Repository implementations."""

from src.persistence.repositories.session_repo import SessionRepository

__all__ = ["SessionRepository"]
