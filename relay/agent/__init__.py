"""
Agent session wrappers.
"""

from .session import BaseAgentSession, ClaudeSession, create_claude_session

__all__ = ["BaseAgentSession", "ClaudeSession", "create_claude_session"]
