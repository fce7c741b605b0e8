"""
Infrastructure for context_lattice: configuration, logging, LLM client.
"""

from .config import ContextConfig
from .logging_config import setup_logging
from .llm_client import LLMProvider, OpenAIChatClient

__all__ = [
    'ContextConfig',
    'setup_logging',
    'LLMProvider',
    'OpenAIChatClient',
]
