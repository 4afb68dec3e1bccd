"""
Relay: heartbeat scheduling, thread serialization and durable sessions for a
chat-integrated agent runtime.
"""

from __future__ import annotations

__version__ = "0.3.0"

__all__ = ["__version__"]
