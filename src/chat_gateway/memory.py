"""Cross-session memory: a short digest of an account's other conversations."""
from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .dispatch import CandidateList, ModelDispatcher
from .errors import GatewayError, SummarizationFailure
from .llm import Conversation, Turn
from .sessions import SessionStore, same_id

logger = logging.getLogger(__name__)

DIGEST_HEADER = "PAST CONVERSATION SUMMARIES:"
SUMMARY_INSTRUCTION = (
    "Summarize the following conversation very briefly (1-2 sentences). "
    "Only provide the summary, nothing else."
)


@dataclass
class MemoryPolicy:
    """Controls how much history goes into the digest."""
    max_sessions: int = 3           # other sessions summarized per request
    transcript_chars: int = 12000   # cap on the transcript sent for one summary
    summary_chars: int = 400        # cap on each bullet


def _transcript(messages: List[Dict[str, Any]], limit_chars: int) -> str:
    """Role-prefixed lines with whitespace compacted, keeping the most recent text."""
    lines: List[str] = []
    for m in messages:
        if not isinstance(m, dict):
            continue
        role = str(m.get("role") or "").strip() or "user"
        content = m.get("content")
        if not isinstance(content, str):
            continue
        content = re.sub(r"\s+", " ", content).strip()
        if content:
            lines.append(f"{role}: {content}")
    joined = "\n".join(lines)
    if len(joined) > limit_chars:
        joined = "[earlier messages omitted]\n" + joined[-limit_chars:]
    return joined


class MemoryAssembler:
    """Summarize up to ``max_sessions`` other sessions into a digest.

    Summaries for distinct sessions run concurrently; the caller waits for
    all of them. Any failure degrades to a missing bullet (or an empty
    digest) and is never raised to the caller.
    """

    def __init__(
        self,
        sessions: SessionStore,
        dispatcher: ModelDispatcher,
        candidates: CandidateList,
        *,
        policy: Optional[MemoryPolicy] = None,
        per_attempt_timeout: Optional[float] = None,
    ) -> None:
        self.sessions = sessions
        self.dispatcher = dispatcher
        self.candidates = candidates
        self.policy = policy or MemoryPolicy()
        self.per_attempt_timeout = per_attempt_timeout

    def build_context(
        self,
        account_email: str,
        exclude_session_id: Any = None,
        max_sessions: Optional[int] = None,
    ) -> str:
        limit = self.policy.max_sessions if max_sessions is None else max(0, int(max_sessions))
        if limit == 0:
            return ""
        try:
            stored = self.sessions.list_sessions(account_email)
        except GatewayError as e:
            logger.warning("Memory digest skipped, sessions unavailable: %s", e)
            return ""

        others = [
            s for s in stored
            if not same_id(s.get("id"), exclude_session_id) and s.get("messages")
        ]
        others.sort(key=_created_at, reverse=True)
        selected = others[:limit]
        if not selected:
            return ""

        with ThreadPoolExecutor(max_workers=len(selected), thread_name_prefix="summary") as pool:
            summaries = list(pool.map(self._summarize_or_empty, selected))

        bullets = [s for s in summaries if s]
        if not bullets:
            return ""
        return DIGEST_HEADER + "\n" + "\n".join(f"- {s}" for s in bullets) + "\n\n"

    # --------- internals ----------
    def _summarize_or_empty(self, session: Dict[str, Any]) -> str:
        try:
            return self.summarize(session)
        except SummarizationFailure as e:
            logger.warning("Summary failed for session %s: %s", session.get("id"), e)
            return ""
        except Exception:
            logger.exception("Unexpected error summarizing session %s", session.get("id"))
            return ""

    def summarize(self, session: Dict[str, Any]) -> str:
        text = _transcript(session.get("messages") or [], self.policy.transcript_chars)
        if not text:
            raise SummarizationFailure("session has no text messages")
        conversation = Conversation(
            system_instructions=SUMMARY_INSTRUCTION,
            current_turn=Turn("user", f"Conversation to summarize:\n\n{text}"),
        )
        try:
            summary = self.dispatcher.complete(conversation, self.candidates, self.per_attempt_timeout)
        except GatewayError as e:
            raise SummarizationFailure(str(e)) from e
        summary = re.sub(r"\s+", " ", summary).strip()
        if len(summary) > self.policy.summary_chars:
            summary = summary[: self.policy.summary_chars].rstrip() + "..."
        return summary


def _created_at(session: Dict[str, Any]) -> float:
    # Session ids are creation timestamps in epoch milliseconds.
    try:
        return float(session.get("id"))
    except (TypeError, ValueError):
        return 0.0
