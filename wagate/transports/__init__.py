"""Concrete MessagingTransport implementations."""

from .wacli import WacliTransport

__all__ = ["WacliTransport"]
