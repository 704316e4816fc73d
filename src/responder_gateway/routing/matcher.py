from __future__ import annotations

from dataclasses import dataclass
import re

from responder_gateway.domain.models import ResponderEntry


DEFAULT_TOPICS = ("Prices", "Business hours", "Location", "Orders", "Contact information")
DEFAULT_RESPONSE = (
    "Sorry, I didn't understand that. 🤔\n\n"
    "You can ask me about:\n"
    + "\n".join(f"• {topic}" for topic in DEFAULT_TOPICS)
    + "\n\nOr send HELP to see all options."
)

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class MatchResult:
    answer: str
    category: str | None
    matched: bool
    keyword: str | None = None


def normalize_text(text: str) -> str:
    lowered = text.lower()
    lowered = _PUNCTUATION.sub(" ", lowered)
    return _WHITESPACE.sub(" ", lowered).strip()


def _keyword_matches(message: str, keyword: str) -> bool:
    if message == keyword:
        return True
    if keyword in message or message in keyword:
        return True
    return re.search(rf"\b{re.escape(keyword)}\b", message) is not None


def find_match(text: str, responders: list[ResponderEntry]) -> MatchResult:
    """Return the first responder (in stored order) with a keyword matching ``text``."""
    message = normalize_text(text or "")
    if not message:
        return MatchResult(answer=DEFAULT_RESPONSE, category=None, matched=False)

    for entry in responders:
        for raw_keyword in entry.keywords:
            keyword = raw_keyword.lower().strip()
            if not keyword:
                continue
            if _keyword_matches(message, keyword):
                return MatchResult(answer=entry.answer, category=entry.category, matched=True, keyword=keyword)

    return MatchResult(answer=DEFAULT_RESPONSE, category=None, matched=False)


def categories(responders: list[ResponderEntry]) -> list[str]:
    seen: list[str] = []
    for entry in responders:
        if entry.category and entry.category not in seen:
            seen.append(entry.category)
    return seen
