"""
Classification Dispatcher.

Uses LangChain + Gemini to attach short labels to newly synced mail.
Classification is best-effort: any failure yields an empty label list
and never reaches the sync path. Work is queued on a small thread pool
so the caller never waits on the model.
"""

import json
import logging
import re
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_google_genai import ChatGoogleGenerativeAI
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mailsync.config import Settings
from mailsync.exceptions import ClassificationError
from mailsync.models.message import Message
from mailsync.services import message_store

logger = logging.getLogger(__name__)

SUGGESTED_LABELS = [
    "notification", "response", "social", "job",
    "promotion", "finance", "travel", "personal", "other"
]

CLASSIFY_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You sort incoming email into a few short labels.
Pick one to three labels, preferably from: {suggested_labels}.
Answer with a JSON array of lowercase strings and nothing else, e.g. ["job", "response"]."""),
    ("human", """From: {sender}
Subject: {subject}
Snippet: {snippet}

Labels:""")
])

# Flat JSON arrays, e.g. ["job", "social"]
_ARRAY_PATTERN = re.compile(r"\[[^\[\]]*\]", re.DOTALL)


@dataclass
class ClassificationResult:
    message_id: Optional[int]
    labels: list[str] = field(default_factory=list)
    error: Optional[str] = None


def parse_labels(text: str, max_labels: int) -> list[str]:
    """
    Pull the first JSON list of strings out of free-form model output.

    Accepts a bare array or an object with a "labels" array, with any
    amount of surrounding prose or code fences.

    Raises:
        ClassificationError: no usable list found
    """
    for candidate in _ARRAY_PATTERN.findall(text or ""):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, list) and all(isinstance(item, str) for item in parsed):
            labels: list[str] = []
            for item in parsed:
                label = item.strip()
                if label and label not in labels:
                    labels.append(label)
            return labels[:max_labels]

    raise ClassificationError(f"no label list in classifier output: {(text or '')[:200]!r}")


def _get_llm(settings: Settings) -> ChatGoogleGenerativeAI:
    """Get configured Gemini LLM instance."""
    return ChatGoogleGenerativeAI(
        model=settings.classifier_model,
        google_api_key=settings.google_api_key,
        temperature=0.0,
        max_output_tokens=128,
        timeout=settings.classifier_timeout_seconds,
        max_retries=1,
    )


class ClassificationDispatcher:
    """
    Classifies messages off the sync path.

    Args:
        llm: Any LangChain chat model / runnable
        session_factory: Creates DB sessions for the worker threads
        max_labels: Cap on labels stored per message
        max_workers: Size of the classification pool
    """

    def __init__(
        self,
        llm: Any,
        session_factory: Callable[[], Session],
        max_labels: int = 5,
        max_workers: int = 2,
    ) -> None:
        self.chain = CLASSIFY_PROMPT | llm | StrOutputParser()
        self.session_factory = session_factory
        self.max_labels = max_labels
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="classify")

    def classify(self, message: Message) -> ClassificationResult:
        """Classify one message. Never raises."""
        try:
            output = self.chain.invoke({
                "suggested_labels": ", ".join(SUGGESTED_LABELS),
                "sender": message.sender or "",
                "subject": message.subject or "",
                "snippet": (message.snippet or "")[:500],
            })
            labels = parse_labels(output, self.max_labels)
        except Exception as e:  # model, transport and parse errors alike
            logger.warning("Classification failed for message %s: %s", message.id, e)
            return ClassificationResult(message_id=message.id, labels=[], error=str(e))

        return ClassificationResult(message_id=message.id, labels=labels)

    def _classify_and_store(self, message_id: int) -> ClassificationResult:
        with self.session_factory() as db:
            message = message_store.get_message(db, message_id)
            if message is None:
                return ClassificationResult(message_id=message_id, error="message not found")

            result = self.classify(message)
            if not result.labels:
                return result

            try:
                message_store.add_labels(db, message_id, result.labels)
            except SQLAlchemyError as e:
                db.rollback()
                logger.warning("Could not store labels for message %s: %s", message_id, e)
                result.error = str(e)
                return result

            logger.info("🏷️  Labelled message %s: %s", message_id, result.labels)
            return result

    def dispatch(self, message_ids: Iterable[int]) -> list[Future]:
        """Queue messages for classification and return immediately."""
        return [self._executor.submit(self._classify_and_store, mid) for mid in message_ids]

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def build_dispatcher(
    settings: Settings,
    session_factory: Callable[[], Session]
) -> Optional[ClassificationDispatcher]:
    """Dispatcher backed by Gemini, or None when GOOGLE_API_KEY is not configured."""
    if not settings.google_api_key:
        logger.info("GOOGLE_API_KEY not configured; classification disabled")
        return None

    return ClassificationDispatcher(
        llm=_get_llm(settings),
        session_factory=session_factory,
        max_labels=settings.classifier_max_labels,
        max_workers=settings.classifier_workers,
    )
