"""
Conversational Rule Builder.

Builds classification rules through a short chat with the AI collaborator:
- start_session() seeds a greeting for a library
- process_message() relays user turns to the chat model and accumulates
  partial criteria from keyword heuristics over the exchange
- generate_rule() compiles the accumulated context into a persisted Rule

Sessions live in an in-memory SessionStore keyed by session id. Every
access to one session goes through that session's lock, and a background
sweep evicts sessions idle longer than the TTL.

Session states: created -> active -> ready -> {compiled, expired}.
"""
import asyncio
import logging
import re
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from ai_chat import ChatClient, get_chat_client
from clock import Clock, isoformat_z, utcnow
from config import get_settings
from database import get_session as get_db_session
from exceptions import NotFoundError, ProviderError, ValidationError
from models import Library, Rule
from rule_engine import normalize_criteria

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(minutes=30)
DEFAULT_SWEEP_INTERVAL = 300  # seconds

# The chat model appends this when it has enough to build a rule
READY_MARKER = "[READY]"

GENRE_KEYWORDS = [
    "action", "comedy", "drama", "horror", "sci-fi", "fantasy",
    "thriller", "romance", "documentary", "animation", "anime",
]

RATING_KEYWORDS = [
    "g", "pg", "pg-13", "r", "nc-17", "tv-y", "tv-y7", "tv-g", "tv-pg", "tv-14", "tv-ma",
]

LANGUAGE_CODES = {
    "english": "en",
    "japanese": "ja",
    "korean": "ko",
    "spanish": "es",
    "french": "fr",
    "german": "de",
    "italian": "it",
}

_QUOTED_RE = re.compile(r'"([^"]+)"')
_YEAR_RANGE_RE = re.compile(r"(\d{4})\s*-\s*(\d{4})")
_LANGUAGE_RE = re.compile(r"\b(" + "|".join(LANGUAGE_CODES) + r")\b", re.IGNORECASE)


def _keyword_re(keyword: str) -> re.Pattern:
    # Hyphens count as part of a keyword so "pg" does not match inside "pg-13"
    return re.compile(r"(?<![\w-])" + re.escape(keyword) + r"(?![\w-])", re.IGNORECASE)


_GENRE_PATTERNS = [(genre, _keyword_re(genre)) for genre in GENRE_KEYWORDS]
_RATING_PATTERNS = [(rating.upper(), _keyword_re(rating)) for rating in RATING_KEYWORDS]


class SessionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    READY = "ready"
    COMPILED = "compiled"
    EXPIRED = "expired"


@dataclass
class RuleBuilderSession:
    """One rule-building conversation."""
    id: str
    library_id: int
    library_name: str
    media_type: str
    created_at: Any
    last_activity: Any
    messages: List[Dict[str, str]] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    state: SessionState = SessionState.CREATED

    def to_dict(self) -> dict:
        return {
            "session_id": self.id,
            "library_id": self.library_id,
            "library_name": self.library_name,
            "media_type": self.media_type,
            "state": self.state.value,
            "messages": [dict(m) for m in self.messages],
            "context": dict(self.context),
            "can_generate_rule": has_enough_information(self.context),
            "created_at": isoformat_z(self.created_at),
            "last_activity": isoformat_z(self.last_activity),
        }


# =============================================================================
# Context extraction
# =============================================================================

def extract_context(context: Dict[str, Any], text: str) -> Dict[str, Any]:
    """
    Fold keyword hits from one exchange into the accumulated context.

    This is a deliberate approximation: fixed genre/rating vocabularies,
    quoted phrases as keywords, the first YYYY-YYYY range, and the first
    recognized language.
    """
    for genre, pattern in _GENRE_PATTERNS:
        if pattern.search(text):
            genres = context.setdefault("genres", [])
            if genre not in genres:
                genres.append(genre)

    for rating, pattern in _RATING_PATTERNS:
        if pattern.search(text):
            ratings = context.setdefault("ratings", [])
            if rating not in ratings:
                ratings.append(rating)

    for keyword in _QUOTED_RE.findall(text):
        keyword = keyword.strip()
        if keyword:
            keywords = context.setdefault("keywords", [])
            if keyword not in keywords:
                keywords.append(keyword)

    year_match = _YEAR_RANGE_RE.search(text)
    if year_match:
        start, end = int(year_match.group(1)), int(year_match.group(2))
        context["year_range"] = {"from": min(start, end), "to": max(start, end)}

    language_match = _LANGUAGE_RE.search(text)
    if language_match:
        context["language"] = language_match.group(1).lower()

    return context


def has_enough_information(context: Dict[str, Any]) -> bool:
    """At least one criterion can be compiled."""
    return bool(
        context.get("genres")
        or context.get("ratings")
        or context.get("keywords")
        or context.get("year_range")
        or context.get("language")
    )


def compile_context(context: Dict[str, Any]) -> List[dict]:
    """Translate accumulated context into Rule Engine criteria."""
    criteria = []
    if context.get("genres"):
        criteria.append({"field": "genres", "operator": "is_one_of", "value": list(context["genres"])})
    if context.get("ratings"):
        criteria.append({"field": "content_rating", "operator": "is_one_of", "value": list(context["ratings"])})
    if context.get("year_range"):
        year_range = context["year_range"]
        criteria.append({
            "field": "year",
            "operator": "between",
            "value": {"min": year_range["from"], "max": year_range["to"]},
        })
    if context.get("keywords"):
        criteria.append({"field": "tags", "operator": "is_one_of", "value": list(context["keywords"])})
    if context.get("language"):
        criteria.append({
            "field": "original_language",
            "operator": "equals",
            "value": LANGUAGE_CODES.get(context["language"], context["language"]),
        })
    return criteria


def generate_rule_name(context: Dict[str, Any]) -> str:
    parts = []
    for key in ("genres", "ratings", "keywords"):
        if context.get(key):
            parts.append(str(context[key][0]))
    return " + ".join(parts) or "Custom Rule"


def generate_rule_description(context: Dict[str, Any]) -> str:
    parts = []
    if context.get("genres"):
        parts.append(f"Genres: {', '.join(context['genres'])}")
    if context.get("ratings"):
        parts.append(f"Ratings: {', '.join(context['ratings'])}")
    if context.get("keywords"):
        parts.append(f"Keywords: {', '.join(context['keywords'])}")
    if context.get("year_range"):
        parts.append(f"Years: {context['year_range']['from']}-{context['year_range']['to']}")
    if context.get("language"):
        parts.append(f"Language: {context['language']}")
    return " | ".join(parts) or "Custom classification rule"


# =============================================================================
# Session store
# =============================================================================

class SessionStore:
    """
    In-memory sessions with one lock per session id and idle-TTL eviction.

    A session is expired once now - last_activity exceeds the TTL; from then
    on it is unreachable, whether or not the sweep has run yet.
    """

    def __init__(self, ttl: timedelta = DEFAULT_SESSION_TTL, clock: Clock = utcnow):
        self.ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, RuleBuilderSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def now(self):
        return self._clock()

    def is_expired(self, session: RuleBuilderSession, now=None) -> bool:
        now = now or self._clock()
        return now - session.last_activity > self.ttl

    def add(self, session: RuleBuilderSession) -> None:
        self._sessions[session.id] = session
        self._locks[session.id] = asyncio.Lock()

    def remove(self, session_id: str) -> None:
        """Drop a session. Call while holding its lock."""
        self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)

    def _expire(self, session: RuleBuilderSession) -> None:
        session.state = SessionState.EXPIRED
        self.remove(session.id)
        logger.info(f"[RULE-BUILDER] Session {session.id} expired")

    @asynccontextmanager
    async def acquire(self, session_id: str):
        """
        Hold a session exclusively.

        Raises:
            NotFoundError: Session is unknown, already removed, or expired
        """
        lock = self._locks.get(session_id)
        if lock is None:
            raise NotFoundError(f"Session {session_id} not found or expired")
        async with lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found or expired")
            if self.is_expired(session):
                self._expire(session)
                raise NotFoundError(f"Session {session_id} not found or expired")
            yield session

    async def sweep(self) -> int:
        """Evict every idle session past the TTL; returns the count."""
        expired = 0
        for session_id in list(self._sessions):
            lock = self._locks.get(session_id)
            # A held lock means a request is using the session right now
            if lock is None or lock.locked():
                continue
            async with lock:
                session = self._sessions.get(session_id)
                if session is not None and self.is_expired(session):
                    self._expire(session)
                    expired += 1
        if expired:
            logger.info(f"[RULE-BUILDER] Swept {expired} expired sessions")
        return expired


# =============================================================================
# Service
# =============================================================================

class RuleBuilderService:
    """Runs rule-builder conversations on top of a SessionStore."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        chat_client: Optional[ChatClient] = None,
        session_factory=get_db_session,
    ):
        self.store = store if store is not None else SessionStore()
        self._chat_client = chat_client
        self._session_factory = session_factory
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def chat_client(self) -> ChatClient:
        # Not cached here so a settings change picks up the new client
        return self._chat_client if self._chat_client is not None else get_chat_client()

    async def start_session(self, library_id: int, media_type: Optional[str] = None) -> dict:
        """
        Open a conversation for a library.

        Raises:
            NotFoundError: Library does not exist
        """
        db = self._session_factory()
        try:
            library = db.query(Library).filter(Library.id == library_id).first()
            if not library:
                raise NotFoundError(f"Library {library_id} not found")
            library_name = library.name
            media_type = media_type or library.media_type
        finally:
            db.close()

        now = self.store.now()
        session = RuleBuilderSession(
            id=uuid.uuid4().hex,
            library_id=library_id,
            library_name=library_name,
            media_type=media_type,
            created_at=now,
            last_activity=now,
        )
        greeting = (
            f"Hello! I'm here to help you create a classification rule for your "
            f"\"{library_name}\" library ({media_type}).\n\n"
            "We can build rules from genres, ratings, keywords, original language "
            "and release year ranges.\n\n"
            f"What kind of {media_type} should go into \"{library_name}\"?"
        )
        session.messages.append({"role": "assistant", "content": greeting})
        session.state = SessionState.ACTIVE
        self.store.add(session)

        logger.info(f"[RULE-BUILDER] Started session {session.id} for library {library_name}")
        return {"session_id": session.id, "message": greeting, "state": session.state.value}

    def _system_prompt(self, session: RuleBuilderSession) -> str:
        return (
            "You are a helpful assistant building media classification rules. "
            f"You are talking with a user about their \"{session.library_name}\" library "
            f"of {session.media_type}.\n\n"
            "Ask clarifying questions about genres, ratings, keywords, language "
            "and year ranges, one or two at a time. Keep replies to 2-3 sentences.\n\n"
            f"Criteria gathered so far: {session.context or 'none'}\n\n"
            f"When you have enough information to build the rule, end your reply with {READY_MARKER}."
        )

    async def process_message(self, session_id: str, text: str) -> dict:
        """
        Relay one user message and fold the exchange into the session context.

        Raises:
            ValidationError: Empty message
            NotFoundError: Session missing or expired
            ProviderError: The chat model failed (the user turn is discarded)
        """
        if not text or not text.strip():
            raise ValidationError("Message must not be empty")

        async with self.store.acquire(session_id) as session:
            session.messages.append({"role": "user", "content": text})
            session.last_activity = self.store.now()

            chat_messages = [{"role": "system", "content": self._system_prompt(session)}]
            chat_messages.extend(session.messages)
            try:
                reply = await self.chat_client.chat(chat_messages)
            except ProviderError as e:
                session.messages.pop()
                logger.error(f"[RULE-BUILDER] Chat failed for session {session_id}: {e.message}")
                raise

            reply = reply.rstrip()
            if reply.endswith(READY_MARKER):
                reply = reply[: -len(READY_MARKER)].rstrip()
                session.state = SessionState.READY

            extract_context(session.context, f"{text}\n{reply}")
            session.messages.append({"role": "assistant", "content": reply})
            session.last_activity = self.store.now()

            return {
                "message": reply,
                "state": session.state.value,
                "can_generate_rule": has_enough_information(session.context),
                "extracted_data": dict(session.context),
            }

    async def generate_rule(self, session_id: str, name: Optional[str] = None) -> dict:
        """
        Persist the session's accumulated criteria as a Rule and close the session.

        Raises:
            NotFoundError: Session missing or expired
            ValidationError: Nothing compilable has been gathered yet
        """
        async with self.store.acquire(session_id) as session:
            criteria = compile_context(session.context)
            if not criteria:
                raise ValidationError("Not enough information to generate a rule")
            normalize_criteria(criteria)

            db = self._session_factory()
            try:
                max_priority = (
                    db.query(func.max(Rule.priority)).filter(Rule.library_id == session.library_id).scalar()
                )
                rule = Rule(
                    library_id=session.library_id,
                    name=name or generate_rule_name(session.context),
                    description=generate_rule_description(session.context),
                    priority=(max_priority + 1) if max_priority is not None else 0,
                    enabled=True,
                    generated_by="rule_builder",
                )
                rule.set_criteria(criteria)
                db.add(rule)
                db.commit()
                db.refresh(rule)
                rule_data = rule.to_dict()
            finally:
                db.close()

            session.state = SessionState.COMPILED
            self.store.remove(session_id)

        logger.info(f"[RULE-BUILDER] Session {session_id} compiled into rule {rule_data['id']}")
        return rule_data

    async def get_session(self, session_id: str) -> dict:
        async with self.store.acquire(session_id) as session:
            return session.to_dict()

    async def end_session(self, session_id: str) -> None:
        """Discard a session without generating a rule."""
        async with self.store.acquire(session_id) as session:
            self.store.remove(session.id)
        logger.info(f"[RULE-BUILDER] Session {session_id} ended")

    # -------------------------------------------------------------------------
    # Background sweep
    # -------------------------------------------------------------------------

    async def start_sweeper(self, interval: float = DEFAULT_SWEEP_INTERVAL) -> None:
        """Run the expiry sweep every interval seconds until stopped."""
        if self._sweeper is not None:
            logger.warning("[RULE-BUILDER] Session sweeper already running")
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval))
        logger.info(f"[RULE-BUILDER] Session sweeper started (interval={interval}s)")

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("[RULE-BUILDER] Session sweeper stopped")

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            try:
                await self.store.sweep()
            except Exception as e:
                logger.exception(f"[RULE-BUILDER] Session sweep failed: {e}")


_rule_builder: Optional[RuleBuilderService] = None


def get_rule_builder() -> RuleBuilderService:
    """Get the global rule builder service."""
    global _rule_builder
    if _rule_builder is None:
        settings = get_settings()
        _rule_builder = RuleBuilderService(
            store=SessionStore(ttl=timedelta(minutes=settings.session_ttl_minutes)),
        )
    return _rule_builder
