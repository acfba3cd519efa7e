"""Account and session access over the ``users`` collection of the key-value store."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import SessionNotFound
from .store import ACCOUNTS_KEY, KeyValueStore, read_collection

logger = logging.getLogger(__name__)


def same_id(a: Any, b: Any) -> bool:
    # Session ids arrive as numbers or strings from JSON clients.
    return a is not None and b is not None and str(a) == str(b)


class SessionStore:
    """Reads accounts and edits the chat sessions stored on them.

    Sessions are kept most-recent-first: a new session is inserted at index 0.
    Existing sessions and messages are never reordered; a session leaves the
    list only through :meth:`delete_session`.
    """

    def __init__(self, store: KeyValueStore, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock

    # --------- reads ----------
    def find_account(self, email: Optional[str]) -> Optional[Dict[str, Any]]:
        if not email:
            return None
        for account in read_collection(self.store, ACCOUNTS_KEY):
            if isinstance(account, dict) and account.get("email") == email:
                return account
        return None

    def list_sessions(self, email: str) -> List[Dict[str, Any]]:
        account = self.find_account(email)
        if not account:
            return []
        return [s for s in account.get("sessions") or [] if isinstance(s, dict)]

    def history(self, email: str) -> List[Dict[str, Any]]:
        """Session index for the sidebar: ``[{id, title}]``."""
        return [{"id": s.get("id"), "title": s.get("title")} for s in self.list_sessions(email)]

    def get_session(self, email: str, session_id: Any) -> Dict[str, Any]:
        for s in self.list_sessions(email):
            if same_id(s.get("id"), session_id):
                return s
        raise SessionNotFound()

    def has_session(self, email: str, session_id: Any) -> bool:
        return any(same_id(s.get("id"), session_id) for s in self.list_sessions(email))

    def account_count(self) -> int:
        return len(read_collection(self.store, ACCOUNTS_KEY))

    # --------- edits ----------
    def _load_account(self, email: str) -> Tuple[List[Any], Optional[Dict[str, Any]]]:
        accounts = read_collection(self.store, ACCOUNTS_KEY)
        account = next(
            (a for a in accounts if isinstance(a, dict) and a.get("email") == email),
            None,
        )
        return accounts, account

    def delete_session(self, email: str, session_id: Any) -> bool:
        """Drop a session. False when no account matches ``email``.

        Deleting an id the account does not have is not an error.
        """
        accounts, account = self._load_account(email)
        if account is None:
            return False
        sessions = account.get("sessions") or []
        account["sessions"] = [
            s for s in sessions
            if not (isinstance(s, dict) and same_id(s.get("id"), session_id))
        ]
        if len(account["sessions"]) != len(sessions):
            self.store.put(ACCOUNTS_KEY, accounts)
            logger.info("Deleted session %s for account %s", session_id, account.get("id"))
        return True

    def record_feedback(self, email: str, session_id: Any, message_content: str, feedback: Optional[str]) -> bool:
        """Tag the first assistant message with ``message_content`` in a session."""
        accounts, account = self._load_account(email)
        if account is None:
            return False
        session = next(
            (s for s in account.get("sessions") or [] if isinstance(s, dict) and same_id(s.get("id"), session_id)),
            None,
        )
        if session is None:
            return False
        message = next(
            (
                m for m in session.get("messages") or []
                if isinstance(m, dict) and m.get("role") == "assistant" and m.get("content") == message_content
            ),
            None,
        )
        if message is None:
            return False
        message["feedback"] = feedback
        self.store.put(ACCOUNTS_KEY, accounts)
        return True

    # --------- writes ----------
    def append_turns(
        self,
        email: str,
        session_id: Any,
        user_content: str,
        assistant_content: str,
        *,
        title: str,
    ) -> Optional[int]:
        """Append a user/assistant pair, creating the session if needed.

        Returns the session id, or None when no account matches ``email``.
        ``title`` is used only when a new session is created. StorageFault propagates.
        """
        accounts, account = self._load_account(email)
        if account is None:
            return None

        sessions = account.setdefault("sessions", [])
        session = next((s for s in sessions if same_id(s.get("id"), session_id)), None)
        if session is None:
            session = {"id": int(self.clock() * 1000), "title": title, "messages": []}
            sessions.insert(0, session)
            logger.info("Created session %s for account %s", session["id"], account.get("id"))

        session.setdefault("messages", []).extend(
            [
                {"role": "user", "content": user_content},
                {"role": "assistant", "content": assistant_content},
            ]
        )
        self.store.put(ACCOUNTS_KEY, accounts)
        return session["id"]
