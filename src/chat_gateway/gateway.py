"""ConversationGateway: admission, memory, dispatch and persistence per chat request."""
from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from .dispatch import ModelCatalog, ModelDispatcher
from .errors import AdmissionDenied, GatewayError, SessionNotFound, StorageFault
from .identity import resolve_identity
from .llm import Content, Conversation, Turn, turns_from_history
from .memory import MemoryAssembler
from .plans import PlanCatalog
from .quota import AdmissionResult, QuotaLedger
from .sessions import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_PERSONA = "You are LifeCoach AI, a calm, structured and supportive AI coach."
TITLE_INSTRUCTION = (
    "Write a very short title (3-5 words) for this chat. "
    "Only write the title, do not use quotes."
)
MAX_TEXT_ATTACHMENT_CHARS = 20000


@dataclass(frozen=True)
class Attachment:
    name: str
    mime_type: str
    data: str  # base64 payload, optionally as a data: URL

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")

    def payload(self) -> str:
        return self.data.split(",", 1)[1] if self.data.startswith("data:") else self.data

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.payload()}"


@dataclass
class ChatInput:
    message: str
    history: List[Dict[str, Any]] = field(default_factory=list)
    origin: Optional[str] = None
    signature: Optional[str] = None
    fingerprint: Optional[str] = None
    email: Optional[str] = None
    session_id: Optional[Union[int, str]] = None
    model: Optional[str] = None
    attachment: Optional[Attachment] = None


@dataclass(frozen=True)
class ChatResult:
    content: str
    session_id: Optional[Union[int, str]]


def _utc_date(value: Any) -> str:
    if not value:
        return "Never"
    try:
        if isinstance(value, (int, float)):
            dt = datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        else:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        return dt.astimezone(timezone.utc).strftime("%Y-%m-%d")
    except (ValueError, OverflowError, OSError):
        return "Never"


def user_context(account: Dict[str, Any]) -> str:
    """Stats and active goals for an account, appended to the system instructions."""
    stats = (
        "USER STATS:\n"
        f"- Current Streak: {int(account.get('streak') or 0)} days\n"
        f"- Last Check-in: {_utc_date(account.get('lastCheckinDate'))}\n"
    )
    goals = [
        g for g in account.get("goals") or []
        if isinstance(g, dict) and g.get("status") == "active" and g.get("title")
    ]
    if not goals:
        return stats
    lines = "\n".join(f"- {g['title']}" for g in goals)
    return f"{stats}\nCURRENT USER ACTIVE GOALS (Keep these in mind):\n{lines}\n"


def _denial_message(result: AdmissionResult) -> str:
    if result.indefinite:
        return "Your access has been blocked."
    return (
        "Sorry, you have reached the message limit. "
        f"Please try again in {result.retry_after_minutes} minutes."
    )


def _clean_title(text: str) -> str:
    title = re.sub(r"\s+", " ", text or "").strip()
    title = re.sub(r"^[\"']|[\"']$", "", title).strip()
    return title[:80]


class ConversationGateway:
    """Composes identity, quota, memory and dispatch for one chat request."""

    def __init__(
        self,
        *,
        sessions: SessionStore,
        ledger: QuotaLedger,
        plans: PlanCatalog,
        dispatcher: ModelDispatcher,
        catalog: ModelCatalog,
        memory: MemoryAssembler,
        persona: str = DEFAULT_PERSONA,
        per_attempt_timeout: Optional[float] = None,
    ) -> None:
        self.sessions = sessions
        self.ledger = ledger
        self.plans = plans
        self.dispatcher = dispatcher
        self.catalog = catalog
        self.memory = memory
        self.persona = persona.strip()
        self.per_attempt_timeout = per_attempt_timeout

    # --------- public API ----------
    def handle(self, req: ChatInput) -> ChatResult:
        """Run one chat request.

        Raises AdmissionDenied, AllProvidersExhausted or StorageFault (while
        persisting); anything unexpected becomes a generic GatewayError.
        """
        try:
            return self._handle(req)
        except GatewayError:
            raise
        except Exception:
            logger.exception("Unhandled error while processing chat request")
            raise GatewayError()

    def history(self, email: str) -> List[Dict[str, Any]]:
        return self.sessions.history(email)

    def get_session(self, email: str, session_id: Any) -> Dict[str, Any]:
        return self.sessions.get_session(email, session_id)

    def delete_session(self, email: str, session_id: Any) -> None:
        if not self.sessions.delete_session(email, session_id):
            raise SessionNotFound("Operation failed.")

    def record_feedback(self, email: str, session_id: Any, message_content: str, feedback: Optional[str]) -> bool:
        return self.sessions.record_feedback(email, session_id, message_content, feedback)

    def account_count(self) -> int:
        return self.sessions.account_count()

    # --------- internals ----------
    def _handle(self, req: ChatInput) -> ChatResult:
        message = (req.message or "").strip()
        account = self._account(req.email)
        identity = resolve_identity(
            req.origin,
            req.signature,
            req.fingerprint,
            account_id=str(account.get("id") or account.get("email")) if account else None,
        )

        plan = self.plans.resolve(account.get("plan") if account else None)
        admission = self.ledger.admit(identity, plan)
        if not admission.allowed:
            logger.info("Admission denied for %s: %s", identity[:16], admission.reason)
            raise AdmissionDenied(_denial_message(admission), admission.retry_after)

        system = self._system_instructions(account, req.session_id)
        current = Turn("user", self._user_content(message, req.attachment))
        conversation = Conversation(
            system_instructions=system,
            prior_turns=turns_from_history(req.history),
            current_turn=current,
        )
        candidates = self.catalog.for_request(vision=conversation.needs_vision, preferred=req.model)
        reply = self.dispatcher.complete(conversation, candidates, self.per_attempt_timeout)

        session_id = req.session_id
        if account:
            session_id = self._persist(account["email"], req.session_id, message, reply)
        return ChatResult(content=reply, session_id=session_id)

    def _account(self, email: Optional[str]) -> Optional[Dict[str, Any]]:
        try:
            return self.sessions.find_account(email)
        except StorageFault as e:
            # Treat the caller as anonymous; quota still applies by network identity.
            logger.warning("Account lookup failed, continuing anonymously: %s", e)
            return None

    def _system_instructions(self, account: Optional[Dict[str, Any]], session_id: Any) -> str:
        if not account:
            return self.persona
        digest = self.memory.build_context(account["email"], session_id)
        return f"{digest}{self.persona}\n\n{user_context(account)}"

    def _user_content(self, message: str, attachment: Optional[Attachment]) -> Content:
        if attachment is None:
            return message
        if attachment.is_image:
            return [
                {"type": "text", "text": message},
                {"type": "image_url", "image_url": {"url": attachment.data_url()}},
            ]
        if attachment.mime_type.lower().startswith("text/"):
            try:
                text = base64.b64decode(attachment.payload()).decode("utf-8", errors="replace")
            except (binascii.Error, ValueError):
                logger.warning("Could not decode text attachment %s", attachment.name)
            else:
                text = text[:MAX_TEXT_ATTACHMENT_CHARS]
                return f"{message}\n\n[Attached file: {attachment.name}]\n{text}"
        return f"{message}\n\n[Attached file: {attachment.name}]"

    def _persist(self, email: str, session_id: Any, message: str, reply: str) -> Optional[Union[int, str]]:
        title = None
        if session_id is None or not self.sessions.has_session(email, session_id):
            title = self._title(message, reply)
        new_id = self.sessions.append_turns(
            email,
            session_id,
            message,
            reply,
            title=title or f"{message[:30]}...",
        )
        return session_id if new_id is None else new_id

    def _title(self, message: str, reply: str) -> str:
        conversation = Conversation(
            system_instructions=TITLE_INSTRUCTION,
            current_turn=Turn("user", f"User: {message}\nAI: {reply}"),
        )
        try:
            text = self.dispatcher.complete(conversation, self.catalog.text, self.per_attempt_timeout)
        except GatewayError as e:
            logger.warning("Title generation failed: %s", e)
            return f"{message[:30]}..."
        return _clean_title(text) or f"{message[:30]}..."

