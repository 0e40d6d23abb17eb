"""
IntentMoE - multi-model intent classification with consensus voting.

A panel of language models classifies each utterance independently; their
votes are reduced by a consensus algorithm and the resulting subtasks are
executed by a dependency-aware orchestrator.
"""

__version__ = "0.1.0"
