from __future__ import annotations

from responder_gateway.domain.models import ResponderEntry
from responder_gateway.routing.matcher import DEFAULT_RESPONSE, categories, find_match, normalize_text


def _responders() -> list[ResponderEntry]:
    return [
        ResponderEntry(keywords=["price", "cost"], answer="₦5,000/month", category="pricing"),
        ResponderEntry(keywords=["hours", "open"], answer="We open 9am to 5pm", category="hours"),
        ResponderEntry(keywords=["location", "address"], answer="12 Marina Road, Lagos", category="location"),
    ]


def test_normalize_text_strips_punctuation_and_collapses_whitespace() -> None:
    assert normalize_text("  What's   the PRICE?! ") == "what s the price"


def test_price_question_matches_first_entry() -> None:
    result = find_match("what's the price?", _responders())
    assert result.matched
    assert result.answer == "₦5,000/month"
    assert result.category == "pricing"


def test_unrelated_text_returns_default_response() -> None:
    result = find_match("banana", _responders())
    assert not result.matched
    assert result.answer == DEFAULT_RESPONSE
    assert result.answer.startswith("Sorry, I didn't understand")
    assert result.category is None


def test_empty_text_returns_default_response() -> None:
    assert not find_match("   ?!  ", _responders()).matched


def test_stored_order_is_priority() -> None:
    responders = [
        ResponderEntry(keywords=["delivery"], answer="first"),
        ResponderEntry(keywords=["delivery cost"], answer="second"),
    ]
    assert find_match("delivery cost please", responders).answer == "first"


def test_message_contained_in_keyword_matches() -> None:
    responders = [ResponderEntry(keywords=["opening hours"], answer="9 to 5")]
    assert find_match("Hours?", responders).answer == "9 to 5"


def test_keywords_are_case_insensitive() -> None:
    responders = [ResponderEntry(keywords=["  Address "], answer="Marina")]
    assert find_match("send me your ADDRESS", responders).answer == "Marina"


def test_default_response_lists_example_topics() -> None:
    for topic in ("Prices", "Business hours", "Location", "Orders", "Contact information"):
        assert topic in DEFAULT_RESPONSE


def test_categories_are_unique_and_ordered() -> None:
    responders = _responders() + [ResponderEntry(keywords=["fee"], answer="x", category="pricing")]
    assert categories(responders) == ["pricing", "hours", "location"]
