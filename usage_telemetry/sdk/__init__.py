"""
SDK for usage telemetry.

Provides an in-process capture point that emits raw events.
"""

from .openai_client import CapturingOpenAI, JsonLinesSink

__all__ = ["CapturingOpenAI", "JsonLinesSink"]
