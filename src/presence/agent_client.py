import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from presence.autonomy.collaborators import SendReceipt, ThreadContext
from presence.autonomy.errors import PresenceError, TransientCollaboratorError
from presence.autonomy.models import FeedItem, Signal
from presence.autonomy.payloads import extract_items, feed_item_from_payload, signal_from_payload


AGENT_API_BASE_URL = "http://127.0.0.1:8787/api/v1"
AGENT_API_BASE_ENV = "PRESENCE_API_BASE"
CREDENTIALS_PATH = Path.home() / ".config" / "presence" / "credentials.json"
_LOCAL_PREFIXES = ("http://127.0.0.1", "http://localhost")


class AgentAuthError(PresenceError):
    pass


@dataclass
class AgentCredentials:
    api_key: str
    agent_name: Optional[str] = None
    source: str = "unknown"

    @classmethod
    def load(cls) -> "AgentCredentials":
        """Load credentials from env or ~/.config/presence/credentials.json.

        Priority:
        1. PRESENCE_API_KEY env var
        2. credentials.json file
        """
        api_key = os.getenv("PRESENCE_API_KEY")
        agent_name: Optional[str] = os.getenv("PRESENCE_AGENT_NAME")
        source = "env:PRESENCE_API_KEY"

        if not api_key and CREDENTIALS_PATH.exists():
            with CREDENTIALS_PATH.open("r", encoding="utf-8") as f:
                data = json.load(f)
            api_key = data.get("api_key")
            agent_name = data.get("agent_name") or agent_name
            source = f"file:{CREDENTIALS_PATH}"

        if api_key is not None:
            api_key = str(api_key).strip()

        if not api_key:
            raise AgentAuthError(
                "Missing agent API key. Set PRESENCE_API_KEY or create "
                f"{CREDENTIALS_PATH} with an 'api_key' field."
            )

        return cls(api_key=api_key, agent_name=agent_name, source=source)


def _error_message(resp: Any) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if not isinstance(data, dict):
        return resp.text or f"HTTP {resp.status_code}"
    return str(data.get("error") or data.get("hint") or data.get("message") or resp.text)


def _check_response(resp: Any, action: str) -> None:
    if resp.status_code in {401, 403}:
        raise AgentAuthError(f"Agent API auth error {resp.status_code} during {action}: {_error_message(resp)}")
    if resp.status_code == 429 or resp.status_code >= 500:
        raise TransientCollaboratorError(f"Agent API error {resp.status_code} during {action}: {_error_message(resp)}")
    if resp.status_code >= 400:
        raise RuntimeError(f"Agent API error {resp.status_code} during {action}: {_error_message(resp)}")


class AgentApiClient:
    """Minimal JSON client for the agent's social API.

    The API key is only sent over https, or to a loopback gateway.
    """

    def __init__(self, credentials: Optional[AgentCredentials] = None):
        self.credentials = credentials or AgentCredentials.load()
        self.base_url = self._normalize_base_url(os.getenv(AGENT_API_BASE_ENV) or AGENT_API_BASE_URL)

    def _normalize_base_url(self, raw: str) -> str:
        candidate = str(raw).strip().rstrip("/")
        if candidate.startswith("https://") or candidate.startswith(_LOCAL_PREFIXES):
            return candidate
        # Plain http to a remote host would leak the bearer token.
        return AGENT_API_BASE_URL

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.base_url}/{path}"

    def _get(self, path: str, action: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            resp = requests.get(self._url(path), headers=self._headers, params=params, timeout=30)
        except (requests_exceptions.Timeout, requests_exceptions.ConnectionError) as e:
            raise TransientCollaboratorError(
                f"Could not reach the agent API for {action} at {self.base_url}. "
                "Check the gateway is running and try again."
            ) from e
        _check_response(resp, action)
        return resp.json()

    def get_me(self) -> Dict[str, Any]:
        return self._get("agents/me", "get_me")

    def get_notifications(self, limit: int = 10) -> Any:
        return self._get("notifications", "get_notifications", params={"limit": limit})

    def get_own_posts(self, agent_id: str, limit: int = 50) -> Any:
        return self._get(f"agents/{agent_id}/posts", "get_own_posts", params={"limit": limit})

    def create_post(self, text: str, reply_to: Optional[ThreadContext] = None) -> Dict[str, Any]:
        if not text:
            raise ValueError("Post text must be provided.")

        payload: Dict[str, Any] = {"text": text}
        if reply_to is not None:
            payload["reply"] = {
                "root": {"id": reply_to.root_id, "token": reply_to.root_token},
                "parent": {"id": reply_to.parent_id, "token": reply_to.parent_token},
            }

        try:
            resp = requests.post(
                self._url("posts"),
                headers=self._headers,
                data=json.dumps(payload),
                timeout=60,
            )
        except (requests_exceptions.Timeout, requests_exceptions.ConnectionError) as e:
            raise TransientCollaboratorError(
                "Timed out while creating a post. The agent API may be slow or temporarily unavailable."
            ) from e

        _check_response(resp, "create_post")
        return resp.json()

    def delete_post(self, post_id: str) -> bool:
        if not post_id:
            raise ValueError("post_id must be provided.")
        try:
            resp = requests.delete(self._url(f"posts/{post_id}"), headers=self._headers, timeout=30)
        except (requests_exceptions.Timeout, requests_exceptions.ConnectionError) as e:
            raise TransientCollaboratorError(f"Timed out while deleting post {post_id}.") from e
        if resp.status_code == 404:
            return False
        _check_response(resp, "delete_post")
        return True


class AgentApiCollaborator:
    """Exposes ``AgentApiClient`` through the scheduler's async collaborator protocols."""

    def __init__(self, client: AgentApiClient, agent_id: str, logger: Optional[logging.Logger] = None):
        self.client = client
        self.agent_id = agent_id
        self.logger = logger or logging.getLogger("presence.autonomy")

    async def ensure_valid_session(self) -> bool:
        try:
            me = await asyncio.to_thread(self.client.get_me)
        except AgentAuthError as e:
            self.logger.error("Session invalid error=%s source=%s", e, self.client.credentials.source)
            return False
        except (TransientCollaboratorError, RuntimeError) as e:
            self.logger.error("Session check failed error=%s", e)
            return False
        self.logger.info("Session valid agent=%s", (me or {}).get("name") or self.agent_id)
        return True

    async def fetch_recent_signals(self, limit: int) -> List[Signal]:
        payload = await asyncio.to_thread(self.client.get_notifications, limit)
        signals = []
        for item in extract_items(payload, ("notifications", "items", "data", "results")):
            signal = signal_from_payload(item)
            if signal is None:
                self.logger.debug("Notification dropped reason=undecodable keys=%s", sorted(item.keys()))
                continue
            signals.append(signal)
        return signals

    async def fetch_own_posts(self, limit: int) -> List[FeedItem]:
        payload = await asyncio.to_thread(self.client.get_own_posts, self.agent_id, limit)
        items = []
        for raw in extract_items(payload, ("posts", "feed", "items", "data")):
            item = feed_item_from_payload(raw)
            if item is not None:
                items.append(item)
        return items

    async def send(self, kind: str, text: str, thread: Optional[ThreadContext] = None) -> SendReceipt:
        data = await asyncio.to_thread(self.client.create_post, text, thread if kind == "reply" else None)
        post = data.get("post") if isinstance(data.get("post"), dict) else data
        post_id = str(post.get("id") or post.get("uri") or "").strip()
        if not post_id:
            raise RuntimeError(f"Agent API returned no post id for kind={kind}")
        token = post.get("token") or post.get("cid")
        return SendReceipt(id=post_id, reference_token=str(token) if token else None)

    async def delete_post(self, post_id: str) -> bool:
        return await asyncio.to_thread(self.client.delete_post, post_id)
