"""Adapters for the shared issue tracker."""

from .base import Substrate
from .github import GitHubSubstrate
from .memory import FakeClock, InMemorySubstrate

__all__ = ["FakeClock", "GitHubSubstrate", "InMemorySubstrate", "Substrate"]
