"""Ordered multi-candidate completion dispatch with per-attempt timeout.

Candidates are tried one after another in list order. The first well-formed,
non-empty answer wins and later candidates are never called. A candidate is
attempted at most once per :meth:`ModelDispatcher.complete` call.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

from .errors import AllProvidersExhausted, AttemptTimeout, ProviderError
from .llm import Conversation

logger = logging.getLogger(__name__)


class CompletionBackend(Protocol):
    def complete(self, model: str, messages: List[Dict[str, Any]], *, timeout: Optional[float] = None) -> str: ...


@dataclass(frozen=True)
class CandidateList:
    """Ordered provider model identifiers; order is priority."""

    models: Tuple[str, ...]
    modality: str = "text"

    @classmethod
    def of(cls, models: Iterable[str], modality: str = "text") -> "CandidateList":
        seen: List[str] = []
        for m in models:
            m = str(m).strip()
            if m and m not in seen:
                seen.append(m)
        return cls(tuple(seen), modality)

    def __iter__(self) -> Iterator[str]:
        return iter(self.models)

    def __len__(self) -> int:
        return len(self.models)

    def __contains__(self, model: object) -> bool:
        return model in self.models

    def preferring(self, model: Optional[str]) -> "CandidateList":
        """New list with a known ``model`` first; unknown models are ignored."""
        if not model or model not in self.models or self.models[0] == model:
            return self
        rest = tuple(m for m in self.models if m != model)
        return CandidateList((model,) + rest, self.modality)


@dataclass(frozen=True)
class ModelCatalog:
    text: CandidateList
    vision: CandidateList

    def for_request(self, *, vision: bool = False, preferred: Optional[str] = None) -> CandidateList:
        base = self.vision if vision else self.text
        return base.preferring(preferred)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "ModelCatalog":
        models_cfg = (cfg or {}).get("models", {}) if isinstance(cfg, dict) else {}
        text = CandidateList.of(models_cfg.get("text") or [], "text")
        vision = CandidateList.of(models_cfg.get("vision") or [], "vision")
        if not text:
            raise RuntimeError("No text model candidates configured (models.text).")
        if not vision:
            logger.warning("No vision candidates configured; image requests will use text models.")
            vision = CandidateList(text.models, "vision")
        return cls(text=text, vision=vision)


class ModelDispatcher:
    """Try each candidate in order under a per-attempt timeout."""

    def __init__(self, backend: CompletionBackend, *, default_timeout: Optional[float] = None) -> None:
        self.backend = backend
        self.default_timeout = default_timeout

    def complete(
        self,
        conversation: Conversation,
        candidates: CandidateList,
        per_attempt_timeout: Optional[float] = None,
    ) -> str:
        timeout = self.default_timeout if per_attempt_timeout is None else per_attempt_timeout
        messages = conversation.to_messages()
        failures: List[Tuple[str, str]] = []

        for model in candidates:
            started = time.monotonic()
            try:
                content = self.backend.complete(model, messages, timeout=timeout)
            except AttemptTimeout as e:
                failures.append((model, f"timeout: {e}"))
                logger.warning("Model %s timed out: %s", model, e)
                continue
            except ProviderError as e:
                failures.append((model, str(e)))
                logger.warning("Model %s failed: %s", model, e)
                continue
            except Exception as e:
                failures.append((model, f"unexpected error: {e!r}"))
                logger.warning("Model %s raised an unexpected error", model, exc_info=True)
                continue

            if not isinstance(content, str) or not content.strip():
                failures.append((model, "empty completion content"))
                logger.warning("Model %s returned empty content", model)
                continue

            logger.debug("Model %s answered in %.2fs", model, time.monotonic() - started)
            return content

        logger.error("All %d candidate model(s) failed: %s", len(candidates), failures)
        raise AllProvidersExhausted(failures)
