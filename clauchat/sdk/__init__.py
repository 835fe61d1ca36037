"""
SDK for ClauChat.

Provides the streaming transport used by the conversation engine.
"""

from .stream_client import BaseTransport, Fragment, OpenAIStreamTransport

__all__ = ["BaseTransport", "Fragment", "OpenAIStreamTransport"]
