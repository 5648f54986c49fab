"""Deckhand - a terminal coding assistant driven by a streaming agent loop."""

__version__ = "0.1.0"

from deckhand.agent import Agent
from deckhand.config import Config

__all__ = ["Agent", "Config", "__version__"]
