from __future__ import annotations

import pytest

from responder_gateway.domain.errors import InvalidIdentityError
from responder_gateway.domain.identities import (
    identities_match,
    identity_from_address,
    is_group_address,
    normalize_identity,
)


def test_local_number_gets_country_code() -> None:
    assert normalize_identity("08107060160") == "+2348107060160"


def test_number_without_country_code() -> None:
    assert normalize_identity("8107060160") == "+2348107060160"


def test_formatted_number_is_stripped() -> None:
    assert normalize_identity("234 810-706-0160") == "+2348107060160"


def test_plus_prefixed_number_is_kept() -> None:
    assert normalize_identity("+1 (415) 555-0100") == "+14155550100"


def test_custom_country_code() -> None:
    assert normalize_identity("07911123456", country_code="44") == "+447911123456"


@pytest.mark.parametrize("raw", ["", "   ", "abc", "12", "+", "1234567890123456789012"])
def test_invalid_identities_raise(raw: str) -> None:
    with pytest.raises(InvalidIdentityError):
        normalize_identity(raw)


def test_identity_from_transport_address() -> None:
    assert identity_from_address("2348107060160@s.whatsapp.net") == "+2348107060160"
    assert identity_from_address("2348107060160:12@s.whatsapp.net") == "+2348107060160"


def test_identities_match_across_formats() -> None:
    assert identities_match("2348107060160@s.whatsapp.net", "08107060160")
    assert not identities_match("2348107060160@s.whatsapp.net", "08107060161")
    assert not identities_match("garbage", "08107060160")


def test_group_address_detection() -> None:
    assert is_group_address("120363025246125486@g.us")
    assert not is_group_address("2348107060160@s.whatsapp.net")
