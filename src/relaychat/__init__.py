"""Credential-holding chat completion relay and streaming chat client."""

__version__ = "0.1.0"
