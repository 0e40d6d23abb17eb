"""Command-line interface for IntentMoE."""

from .main import cli

__all__ = ["cli"]
