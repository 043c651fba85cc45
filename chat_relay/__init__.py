"""Streaming chat relay between a web client and a completion API."""

__version__ = "0.1.0"
