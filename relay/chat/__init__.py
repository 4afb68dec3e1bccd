"""
Chat platform client and streamed replies.
"""

from .client import MattermostClient
from .streaming import StreamingResponse, format_tool_use

__all__ = ["MattermostClient", "StreamingResponse", "format_tool_use"]
