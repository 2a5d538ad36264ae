"""
LLM Trace Proxy: a transparent capture layer for the Anthropic Messages API.
"""

__version__ = "0.1.0"
