"""OpenAI-compatible chat completion client and conversation helpers."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from .config import provider_api_key
from .errors import AttemptTimeout, ProviderError

logger = logging.getLogger(__name__)

Content = Union[str, List[Dict[str, Any]]]


# -----------------------------
# Types
# -----------------------------

@dataclass(frozen=True)
class Turn:
    role: str  # "user" | "assistant"
    content: Content

    def to_message(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content}

    @property
    def has_image(self) -> bool:
        if isinstance(self.content, str):
            return False
        return any(part.get("type") == "image_url" for part in self.content)


@dataclass(frozen=True)
class Conversation:
    """Immutable snapshot handed to the dispatcher."""

    system_instructions: str
    prior_turns: Tuple[Turn, ...] = field(default_factory=tuple)
    current_turn: Optional[Turn] = None

    @property
    def needs_vision(self) -> bool:
        turns = self.prior_turns + ((self.current_turn,) if self.current_turn else ())
        return any(t.has_image for t in turns)

    def to_messages(self) -> List[Dict[str, Any]]:
        msgs: List[Dict[str, Any]] = []
        if self.system_instructions:
            msgs.append({"role": "system", "content": self.system_instructions})
        msgs.extend(t.to_message() for t in self.prior_turns)
        if self.current_turn is not None:
            msgs.append(self.current_turn.to_message())
        return msgs


def turns_from_history(history: Optional[Sequence[Dict[str, Any]]]) -> Tuple[Turn, ...]:
    """Keep well-formed user/assistant turns from a client-supplied history."""
    out: List[Turn] = []
    for m in history or []:
        if not isinstance(m, dict):
            continue
        role = str(m.get("role") or "").strip().lower()
        content = m.get("content")
        if role not in {"user", "assistant"} or not content:
            continue
        out.append(Turn(role=role, content=content if isinstance(content, list) else str(content)))
    return tuple(out)


def _content_text(body: Any) -> str:
    """Extract ``choices[0].message.content`` or raise ProviderError."""
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise ProviderError(f"malformed response body: {e!r}") from e
    if not isinstance(content, str) or not content.strip():
        raise ProviderError("empty completion content")
    return content


# -----------------------------
# Provider client
# -----------------------------

class ProviderClient:
    """Thin wrapper around one OpenAI-compatible ``/chat/completions`` endpoint.

    A fresh :class:`httpx.Client` is opened per call inside a ``with`` block,
    so a timed out or failed attempt always releases its connection.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout: float = 30.0,
        referer: str = "",
        title: str = "",
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = float(timeout)
        self.referer = referer
        self.title = title
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.title:
            headers["X-Title"] = self.title
        return headers

    def complete(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        *,
        timeout: Optional[float] = None,
    ) -> str:
        """Return the completion text for ``model`` or raise AttemptTimeout / ProviderError.

        ``timeout`` is a deadline for the whole attempt. httpx only bounds each
        connect/read/write step, so the body is streamed and the deadline is
        checked after every received chunk; leaving the ``with`` blocks closes
        the connection of an attempt that ran out of time.
        """
        bound = self.timeout if timeout is None else float(timeout)
        deadline = time.monotonic() + bound
        try:
            with httpx.Client(
                timeout=httpx.Timeout(bound),
                headers=self._headers(),
                transport=self._transport,
            ) as client:
                with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json={"model": model, "messages": messages},
                ) as resp:
                    if resp.status_code < 200 or resp.status_code >= 300:
                        raise ProviderError(f"status {resp.status_code}")
                    chunks: List[bytes] = []
                    for chunk in resp.iter_bytes():
                        chunks.append(chunk)
                        if time.monotonic() > deadline:
                            raise AttemptTimeout(f"no complete answer within {bound:g}s")
        except httpx.TimeoutException as e:
            raise AttemptTimeout(f"timed out after {bound:g}s") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"transport error: {e}") from e

        try:
            body = json.loads(b"".join(chunks))
        except ValueError as e:
            raise ProviderError("response body is not JSON") from e
        return _content_text(body)


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any], transport: Optional[httpx.BaseTransport] = None) -> ProviderClient:
    """Create ProviderClient from a config dict (e.g., loaded YAML)."""
    p = (cfg or {}).get("provider", {}) if isinstance(cfg, dict) else {}
    api_key = provider_api_key(cfg)
    if not api_key:
        logger.warning("No provider API key configured; completion calls will likely fail.")
    return ProviderClient(
        base_url=str(p.get("base_url") or "https://openrouter.ai/api/v1"),
        api_key=api_key,
        timeout=float(p.get("timeout", 30.0)),
        referer=str(p.get("referer") or ""),
        title=str(p.get("title") or ""),
        transport=transport,
    )
