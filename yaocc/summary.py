"""Background session summarization.

Each pass waits for the session lock, holds it while it summarizes, and
always releases it. Failures of any kind are logged and swallowed: a
skipped pass is harmless because the next completed turn schedules
another one.

The "rolling" strategy hands the model the current summary together with
the *entire* history on every pass. No offset of already-summarized
messages is tracked, so it costs as much as "full"; it only differs in
asking the model to revise rather than start over.
"""

import logging

from .errors import AgentError, LockError
from .llm import Message
from .session import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 60.0

SUMMARIZER_SYSTEM_PROMPT = (
    "You are an expert summarizer. Your goal is to create/update a summary "
    "of a conversation."
)


def format_transcript(history: list[Message]) -> str:
    return "\n\n".join(f"{m.role}: {m.content}" for m in history)


def build_summary_prompt(strategy: str, current_summary: str, history: list[Message]) -> str:
    transcript = format_transcript(history)
    if strategy == "rolling" and current_summary:
        return (
            f"Here is the current summary of the session:\n{current_summary}\n\n"
            f"Here is the full conversation history:\n{transcript}\n\n"
            "Please update the summary to reflect the full conversation. "
            "Keep it concise but comprehensive."
        )
    return (
        "Please provide a concise but comprehensive summary of the following "
        f"conversation:\n{transcript}"
    )


class Summarizer:
    def __init__(
        self,
        store: SessionStore,
        client,
        strategy: str = "rolling",
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.store = store
        self.client = client
        self.strategy = strategy
        self.lock_timeout = lock_timeout

    def update(self, session_id: str) -> str | None:
        """Run one pass. Returns the new summary, or None if the pass was skipped."""
        try:
            self.store.wait_for_lock(session_id, self.lock_timeout)
            lock = self.store.acquire_lock(session_id)
        except LockError as e:
            logger.info(f"skipping summary for session {session_id!r}: {e}")
            return None
        except OSError as e:
            logger.warning(f"cannot lock session {session_id!r}: {e}")
            return None

        with lock:
            return self._summarize(session_id)

    def _summarize(self, session_id: str) -> str | None:
        try:
            history = self.store.load_history(session_id)
        except OSError as e:
            logger.warning(f"failed to load history for summary: {e}")
            return None
        if not history:
            return None

        current = ""
        if self.strategy == "rolling":
            try:
                current = self.store.load_summary(session_id)
            except OSError as e:
                logger.warning(f"failed to load current summary: {e}")

        prompt = build_summary_prompt(self.strategy, current, history)
        messages = [
            Message(role="system", content=SUMMARIZER_SYSTEM_PROMPT),
            Message(role="user", content=prompt),
        ]
        try:
            summary, _ = self.client.chat(messages, None)
        except AgentError as e:
            logger.warning(f"failed to generate summary for {session_id!r}: {e}")
            return None

        try:
            self.store.save_summary(session_id, summary)
        except OSError as e:
            logger.warning(f"failed to save summary for {session_id!r}: {e}")
            return None
        logger.debug(f"updated summary for session {session_id!r}")
        return summary
