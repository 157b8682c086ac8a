from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .models import FeedItem, Signal


@dataclass
class SendReceipt:
    id: str
    reference_token: Optional[str] = None


@dataclass
class ThreadContext:
    root_id: str
    parent_id: str
    root_token: Optional[str] = None
    parent_token: Optional[str] = None


@dataclass
class GenerationResult:
    text: str
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    stop_reason: str = "stop"


class SignalSource(Protocol):
    async def fetch_recent_signals(self, limit: int) -> List[Signal]:
        ...


class ContentTransmitter(Protocol):
    async def send(self, kind: str, text: str, thread: Optional[ThreadContext] = None) -> SendReceipt:
        ...


class LanguageModel(Protocol):
    async def generate(self, prompt: str, tools: Optional[List[Dict[str, Any]]] = None) -> GenerationResult:
        ...


class SessionProvider(Protocol):
    async def ensure_valid_session(self) -> bool:
        ...


class OwnFeedSource(Protocol):
    async def fetch_own_posts(self, limit: int) -> List[FeedItem]:
        ...


class PostDeleter(Protocol):
    async def delete_post(self, post_id: str) -> bool:
        ...


class ImprovementRunner(Protocol):
    async def run_improvement(self, category: str, description: str, plan: str) -> bool:
        ...
