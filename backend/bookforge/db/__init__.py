"""Database engine, session factory and declarative base."""

from .base import Base
from .session import build_engine, build_session_factory

__all__ = ["Base", "build_engine", "build_session_factory"]
