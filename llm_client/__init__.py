"""
Local LLM client module.
OpenAI-compatible transport used by the inference collaborator (Ollama, vLLM, etc.).
"""

from .client import LocalLLMClient

__all__ = ['LocalLLMClient']
