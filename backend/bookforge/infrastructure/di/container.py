"""Dependency injection container.

One container is built per process (or per Celery task run) by the entry point
and passed where it is needed; there is no global instance. Every registration
is built lazily on first resolve and then reused.
"""
from __future__ import annotations

from typing import TypeVar, Type, Dict, Callable, Any

T = TypeVar("T")


class Container:
    def __init__(self) -> None:
        self._factories: Dict[Type, Callable[["Container"], Any]] = {}
        self._instances: Dict[Type, Any] = {}

    def register(self, interface: Type[T], factory: Callable[["Container"], T]) -> None:
        self._factories[interface] = factory
        self._instances.pop(interface, None)

    def register_instance(self, interface: Type[T], instance: T) -> None:
        self._factories[interface] = lambda c: instance
        self._instances[interface] = instance

    def resolve(self, interface: Type[T]) -> T:
        if interface not in self._factories:
            raise KeyError(f"No registration found for {interface.__name__}")
        if interface not in self._instances:
            self._instances[interface] = self._factories[interface](self)
        return self._instances[interface]
