"""Offline-first conversation sync for the ChatSphere chat client."""

__version__ = "0.1.0"
