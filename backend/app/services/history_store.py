"""
Per-user history store.

Three kinds of rows are read here:
  - learning_sessions      finished practice sessions (category, grade, score, date)
  - question_feedback      prompts a user flagged as bad
  - user_context_history   context combinations shown to a user, with family id

Only user_context_history is written by this service.
"""

import logging
import threading
from datetime import datetime
from typing import Iterable

from app.models.context import ContextHistoryEntry
from app.models.selection import LearningSession

logger = logging.getLogger("quizengine.history_store")

# Feedback types that remove a prompt from a user's future sessions
EXCLUDING_FEEDBACK_TYPES: tuple[str, ...] = ("confusing", "inappropriate", "not_curriculum_compliant")


class UserHistoryStore:
    def fetch_learning_sessions(self, user_id: str, since: datetime) -> list[LearningSession]:
        """Sessions of `user_id` on or after `since`, newest first."""
        raise NotImplementedError

    def fetch_negative_feedback(self, user_id: str, feedback_types: Iterable[str] = EXCLUDING_FEEDBACK_TYPES) -> set[str]:
        """Prompt texts the user flagged with one of `feedback_types`."""
        raise NotImplementedError

    def fetch_context_history(self, user_id: str, category: str, grade: int, since: datetime) -> list[ContextHistoryEntry]:
        """Context rows for (user, category, grade) on or after `since`, newest first."""
        raise NotImplementedError

    def insert_context_history(self, entry: ContextHistoryEntry) -> None:
        raise NotImplementedError


class InMemoryUserHistoryStore(UserHistoryStore):
    def __init__(self):
        self._lock = threading.Lock()
        self.sessions: list[LearningSession] = []
        self.feedback: list[dict] = []
        self.context_history: list[ContextHistoryEntry] = []

    def add_session(self, session: LearningSession) -> None:
        with self._lock:
            self.sessions.append(session)

    def add_feedback(self, user_id: str, question_content: str, feedback_type: str) -> None:
        with self._lock:
            self.feedback.append({
                "user_id": user_id,
                "question_content": question_content,
                "feedback_type": feedback_type,
            })

    def fetch_learning_sessions(self, user_id, since):
        with self._lock:
            rows = [s for s in self.sessions if s.user_id == user_id and s.session_date >= since]
        return sorted(rows, key=lambda s: s.session_date, reverse=True)

    def fetch_negative_feedback(self, user_id, feedback_types=EXCLUDING_FEEDBACK_TYPES):
        types = set(feedback_types)
        with self._lock:
            return {
                f["question_content"] for f in self.feedback
                if f["user_id"] == user_id and f["feedback_type"] in types
            }

    def fetch_context_history(self, user_id, category, grade, since):
        with self._lock:
            rows = [
                e for e in self.context_history
                if e.user_id == user_id and e.category == category
                and e.grade == grade and e.session_date >= since
            ]
        return sorted(rows, key=lambda e: e.session_date, reverse=True)

    def insert_context_history(self, entry):
        with self._lock:
            self.context_history.append(entry)


class SupabaseUserHistoryStore(UserHistoryStore):
    def __init__(self, supabase_client):
        self.sb = supabase_client

    def fetch_learning_sessions(self, user_id, since):
        r = (
            self.sb.table("learning_sessions")
            .select("*")
            .eq("user_id", user_id)
            .gte("session_date", since.isoformat())
            .order("session_date", desc=True)
            .execute()
        )
        return [LearningSession.model_validate(row) for row in getattr(r, "data", None) or []]

    def fetch_negative_feedback(self, user_id, feedback_types=EXCLUDING_FEEDBACK_TYPES):
        r = (
            self.sb.table("question_feedback")
            .select("question_content, feedback_type")
            .eq("user_id", user_id)
            .in_("feedback_type", list(feedback_types))
            .execute()
        )
        return {
            row["question_content"] for row in getattr(r, "data", None) or []
            if row.get("question_content")
        }

    def fetch_context_history(self, user_id, category, grade, since):
        r = (
            self.sb.table("user_context_history")
            .select("*")
            .eq("user_id", user_id)
            .eq("category", category)
            .eq("grade", grade)
            .gte("session_date", since.isoformat())
            .order("session_date", desc=True)
            .execute()
        )
        out = []
        for row in getattr(r, "data", None) or []:
            try:
                out.append(ContextHistoryEntry.model_validate(row))
            except ValueError as exc:
                logger.warning("[history_store.fetch_context_history] Skipping malformed row: %s", exc)
        return out

    def insert_context_history(self, entry):
        self.sb.table("user_context_history").insert(entry.model_dump(mode="json", exclude_none=True)).execute()
