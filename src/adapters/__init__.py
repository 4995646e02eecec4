"""Adapters for bootbot.

Adapters implement the core ports against concrete backends (SQLite, HTTP
data providers) so the core never imports them.
"""
