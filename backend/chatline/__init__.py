"""Chatline: real-time chat backend (rooms, direct messages, presence)."""

__version__ = "0.1.0"
