"""
Core modules for ClauChat.

This package contains the conversation model, token and cost
estimation, the error taxonomy, and the streaming conversation engine.
"""
