"""Core domain package for bootbot.

Core contains the wire codec, routing, throttling, feature handlers and the
connection state machine without any SQLite or HTTP-specific code, keeping
the session runtime portable and testable with fakes.
"""
