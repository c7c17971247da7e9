"""Keeps a sandboxed gateway process alive and proxies traffic to it."""

__version__ = "0.1.0"
