"""Provider adaptors for agent-engine.

This module provides implementations of ProviderAdaptor for various LLM providers.
"""

from agent_engine.adaptors.openai import OpenAIAdaptor

__all__ = ["OpenAIAdaptor"]

# Conditional imports for optional SDK-based adaptors
try:
    from agent_engine.adaptors.anthropic import AnthropicAdaptor

    __all__.append("AnthropicAdaptor")
except ImportError:
    pass

try:
    from agent_engine.adaptors.gemini import GeminiAdaptor

    __all__.append("GeminiAdaptor")
except ImportError:
    pass
