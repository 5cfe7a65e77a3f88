"""
SDK for AI Reliability Guard.

Provides guarded provider clients built on the reliability engine.
"""

from .openai_client import GuardedOpenAI

__all__ = ["GuardedOpenAI"]
