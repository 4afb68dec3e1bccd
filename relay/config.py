"""
Environment-based platform configuration.

Holds the chat platform URL, bot credentials and permission settings used by
the chat client and by heartbeat sessions that route permission prompts back
through the chat channel.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv


def _to_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return bool(default)
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return bool(default)


@dataclass
class PlatformConfig:
    """
    Chat platform connectivity and bot credentials.
    """

    url: str
    """Base URL of the chat platform (http or https)."""

    bot_token: str
    """Bearer token used for REST calls."""

    bot_id: str = ""
    """User id of the bot account."""

    channel_id: str = ""
    """Default channel the runtime listens on."""

    allowed_users: List[str] = field(default_factory=list)
    """Usernames allowed to answer permission prompts."""

    skip_permissions: bool = False
    """When true, sessions never route permission prompts to the channel."""

    def __post_init__(self) -> None:
        self.url = str(self.url or "").strip().rstrip("/")
        self.bot_token = str(self.bot_token or "").strip()
        self.bot_id = str(self.bot_id or "").strip()
        self.channel_id = str(self.channel_id or "").strip()
        self.allowed_users = [
            str(user).strip() for user in self.allowed_users if str(user).strip()
        ]

    def validate(self) -> None:
        """Validate platform configuration."""
        parsed = urlparse(self.url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(f"RELAY_PLATFORM_URL must be an HTTP(S) URL, got: '{self.url}'")
        if not self.bot_token:
            raise ValueError("RELAY_BOT_TOKEN is required")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PlatformConfig":
        """
        Build the platform config from environment variables.

        Loads a ``.env`` file first when reading the process environment.

        Raises:
            ValueError: If a required variable is missing or the URL is invalid.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        missing = [
            key for key in ("RELAY_PLATFORM_URL", "RELAY_BOT_TOKEN")
            if not str(environ.get(key, "")).strip()
        ]
        if missing:
            raise ValueError(f"Missing required env var(s): {', '.join(missing)}")

        config = cls(
            url=environ["RELAY_PLATFORM_URL"],
            bot_token=environ["RELAY_BOT_TOKEN"],
            bot_id=environ.get("RELAY_BOT_ID", ""),
            channel_id=environ.get("RELAY_CHANNEL_ID", ""),
            allowed_users=environ.get("RELAY_ALLOWED_USERS", "").split(","),
            skip_permissions=_to_bool(environ.get("RELAY_SKIP_PERMISSIONS"), False),
        )
        config.validate()
        return config

    def api_url(self, path: str) -> str:
        return f"{self.url}/api/v4{path}"

    def permission_env(self, *, channel_id: str, thread_id: str = "") -> Optional[Dict[str, str]]:
        """
        Build the environment handed to the permission-prompt server.

        Returns None when permissions are globally skipped.
        """
        if self.skip_permissions:
            return None
        return {
            "PLATFORM_URL": self.url,
            "PLATFORM_TOKEN": self.bot_token,
            "PLATFORM_BOT_ID": self.bot_id,
            "PLATFORM_CHANNEL_ID": str(channel_id or ""),
            "PLATFORM_THREAD_ID": str(thread_id or ""),
            "ALLOWED_USERS": ",".join(self.allowed_users),
        }
