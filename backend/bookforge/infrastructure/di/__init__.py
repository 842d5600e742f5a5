"""Dependency injection container and providers."""

from .container import Container
from .providers import build_container, configure_container, session_factory

__all__ = [
    "Container",
    "build_container",
    "configure_container",
    "session_factory",
]
