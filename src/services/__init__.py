"""Conversation engine services."""
