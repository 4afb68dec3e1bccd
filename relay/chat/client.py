"""
Minimal REST client for the chat platform (Mattermost API v4).

Only the calls the heartbeat runtime needs: creating a post, editing a post
and sending a typing indicator. Failures are logged and reported as None.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from relay.config import PlatformConfig
from relay.logging import get_logger

logger = get_logger(__name__)


class MattermostClient:
    """
    Chat client bound to one platform and bot account.
    """

    def __init__(
        self,
        config: PlatformConfig,
        *,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config
        self.timeout = float(timeout)
        self._http = session or requests.Session()
        self._http.headers.update(
            {
                "Authorization": f"Bearer {config.bot_token}",
                "Content-Type": "application/json",
            }
        )

    def create_post(
        self,
        channel_id: str,
        message: str,
        root_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Create a post, optionally as a reply in thread ``root_id``.

        Returns:
            The created post (with ``id``), or None on failure.
        """
        body: Dict[str, Any] = {"channel_id": channel_id, "message": message}
        if root_id:
            body["root_id"] = root_id
        return self._request("POST", "/posts", body)

    def update_post(self, post_id: str, message: str) -> Optional[Dict[str, Any]]:
        """Replace the message of an existing post."""
        return self._request("PUT", f"/posts/{post_id}", {"id": post_id, "message": message})

    def send_typing(self, channel_id: str, parent_id: Optional[str] = None) -> None:
        """Show the typing indicator in a channel or thread."""
        body: Dict[str, Any] = {"channel_id": channel_id}
        if parent_id:
            body["parent_id"] = parent_id
        self._request("POST", "/users/me/typing", body)

    def _request(self, method: str, path: str, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        url = self.config.api_url(path)
        try:
            response = self._http.request(method, url, json=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("%s %s failed: %s", method, path, exc)
            return None

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError:
            logger.warning("%s %s returned a non-JSON body", method, path)
            return {}
        return payload if isinstance(payload, dict) else {}
