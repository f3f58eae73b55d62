"""
Response router for general (non-command) queries.

    1. knowledge check - the LLM answers only if it can from static knowledge,
       otherwise it returns KNOWLEDGE_CHECK_SENTINEL verbatim
    2. sentinel + search enabled + online -> web search, then re-ask with the
       retrieved facts as the only context
    3. search offline/timeout/failure -> plain ungrounded answer
    4. LLM failure -> "I don't know."

Delivery is a notification plus background speech; neither blocks the
listener from returning to idle.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import LLMError, SearchError, SpeechError
from .net import has_internet

logger = logging.getLogger(__name__)

KNOWLEDGE_CHECK_SENTINEL = "I do not have enough up-to-date information to answer this."
FALLBACK_ANSWER = "I don't know."

SOURCE_LLM = "llm"
SOURCE_SEARCH = "search"
SOURCE_FALLBACK = "fallback"


def knowledge_check_prompt(question: str) -> str:
    return (
        "Answer the user ONLY IF you are certain the answer is:\n"
        "- Not time-sensitive\n"
        "- Not dependent on real-time data\n"
        "- Not dependent on events after your training cutoff\n"
        "- Not dependent on current news, stock prices, sports results, weather, or recent events\n\n"
        "If you can answer confidently from static knowledge, give the answer.\n\n"
        "If you cannot answer confidently, respond with EXACTLY this sentence and nothing else:\n\n"
        f"\"{KNOWLEDGE_CHECK_SENTINEL}\"\n\n"
        f"User question:\n{question}\n\n"
        "Important: Never mention knowledge cutoff, training data, or that you are an AI language model."
    )


def grounded_prompt(question: str, facts: str) -> str:
    return (
        f"User question:\n{question}\n\n"
        f"Retrieved web information:\n{facts}\n\n"
        "Answer the question clearly and concisely using ONLY the information above.\n"
        f"If the information is insufficient or contradictory, say \"{FALLBACK_ANSWER}\"\n\n"
        "Important: Never mention knowledge cutoff, training data, or that you are an AI language model."
    )


def is_sentinel(text: str) -> bool:
    return text.strip().strip('"').strip() == KNOWLEDGE_CHECK_SENTINEL


@dataclass(frozen=True)
class Answer:
    """Final answer text. ``grounded`` is True when it was composed from search results."""

    text: str
    source: str
    question: str = ""
    grounded: bool = False


class ResponseRouter:
    def __init__(
        self,
        llm,
        search=None,
        speaker=None,
        notifier=None,
        search_cfg: Optional[Dict[str, Any]] = None,
        connectivity: Callable[[int], Awaitable[bool]] = has_internet,
    ):
        cfg = search_cfg or {}
        self.llm = llm
        self.search = search
        self.speaker = speaker
        self.notifier = notifier
        self.search_enabled = bool(cfg.get("enabled", True)) and search is not None
        self.timeout_ms = int(cfg.get("timeout_ms", 5000))
        self.country = cfg.get("country") or None
        self.probe_timeout_ms = int(cfg.get("probe_timeout_ms", 800))
        self._connectivity = connectivity

    async def answer(self, question: str) -> Answer:
        if self.llm is None:
            logger.warning("No LLM configured")
            return Answer(FALLBACK_ANSWER, SOURCE_FALLBACK, question)
        if not self.search_enabled:
            return await self._plain_answer(question)

        try:
            first = await self.llm.answer_short(knowledge_check_prompt(question))
        except LLMError as e:
            logger.warning(f"Knowledge check failed: {e.message}")
            return await self._plain_answer(question)

        if first.strip() and not is_sentinel(first):
            logger.info("Answered from static knowledge, no search")
            return Answer(first.strip(), SOURCE_LLM, question)

        logger.info("LLM needs up-to-date information, trying search")
        if not await self._connectivity(self.probe_timeout_ms):
            logger.warning("No internet connection, skipping search")
            return await self._plain_answer(question)

        try:
            result = await asyncio.wait_for(
                self.search.search(question, self.timeout_ms, self.country),
                self.timeout_ms / 1000.0,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Search timed out after {self.timeout_ms} ms")
            return await self._plain_answer(question)
        except SearchError as e:
            logger.warning(f"Search failed: {e.message}")
            return await self._plain_answer(question)

        try:
            text = await self.llm.answer_short(grounded_prompt(question, result.facts_text))
        except LLMError as e:
            logger.warning(f"Grounded answer failed: {e.message}")
            return await self._plain_answer(question)
        return Answer(text.strip(), SOURCE_SEARCH, question, grounded=True)

    async def _plain_answer(self, question: str) -> Answer:
        try:
            text = await self.llm.answer_short(question)
        except LLMError as e:
            logger.error(f"LLM unavailable: {e.message}")
            return Answer(FALLBACK_ANSWER, SOURCE_FALLBACK, question)
        if is_sentinel(text):
            return Answer(FALLBACK_ANSWER, SOURCE_FALLBACK, question)
        return Answer(text.strip(), SOURCE_LLM, question)

    def deliver(self, answer: Answer) -> Optional[asyncio.Task]:
        """Show and speak the answer. Returns the speech task, if any."""
        if self.notifier is not None:
            if answer.source == SOURCE_SEARCH:
                self.notifier.notify_answer_with_link(answer.text, answer.source, answer.question)
            else:
                self.notifier.notify_answer(answer.text, answer.source)

        if self.speaker is None:
            return None
        return self.speaker.speak_background(answer.text, on_error=self._speech_failed)

    def _speech_failed(self, error: SpeechError) -> None:
        logger.info(f"Answer delivered as text only ({error.message})")
