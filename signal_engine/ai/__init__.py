"""Model services and arbitration.

This module provides:
- The prediction service client (statistical model)
- The reasoning service client (language model) with prompt and parser
- The arbitrator that picks between them per strategy pass
- Trade idea publishing for high-confidence decisions
"""

from signal_engine.ai.arbitrator import ModelArbitrator, choose_model
from signal_engine.ai.llm_client import LLMResponse, ReasoningClient
from signal_engine.ai.ml_client import MLServiceClient
from signal_engine.ai.parser import parse_decision

__all__ = [
    'ModelArbitrator',
    'choose_model',
    'LLMResponse',
    'ReasoningClient',
    'MLServiceClient',
    'parse_decision',
]
