"""
ClauChat: a streaming chat client for hosted language models.

The conversation engine turns a message history into a streamed request
and keeps a live token/cost estimate while the reply arrives.
"""

__version__ = "0.1.0"
