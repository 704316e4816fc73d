"""Network identity normalization.

Identities are stored in E.164 form (``+<digits>``). Transports address peers
with suffixed addresses such as ``2348107060160@s.whatsapp.net``; those are
reduced to the bare identity before any comparison.
"""

from __future__ import annotations

import re

from responder_gateway.domain.errors import InvalidIdentityError

DEFAULT_COUNTRY_CODE = "234"
_NON_DIGITS = re.compile(r"\D")


def normalize_identity(raw: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidIdentityError("identity must be a non-empty string")

    text = raw.strip()
    if text.startswith("+"):
        digits = _NON_DIGITS.sub("", text[1:])
        if len(digits) < 1 or len(digits) > 18:
            raise InvalidIdentityError(f"invalid identity length: {len(digits)} digits (expected 1-18)")
        return "+" + digits

    digits = _NON_DIGITS.sub("", text)
    if not digits:
        raise InvalidIdentityError(f"invalid identity {raw!r}: no digits found")

    if digits.startswith("0"):
        digits = country_code + digits[1:]
    elif not digits.startswith(country_code):
        digits = country_code + digits

    if len(digits) < 10 or len(digits) > 18:
        raise InvalidIdentityError(f"invalid identity length: {len(digits)} digits (expected 10-18)")
    return "+" + digits


def identity_from_address(address: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    if not isinstance(address, str) or not address.strip():
        raise InvalidIdentityError("address must be a non-empty string")

    local_part = address.strip().split("@", 1)[0]
    # multi-device addresses carry a ":<device>" suffix on the local part
    local_part = local_part.split(":", 1)[0]
    if not local_part:
        raise InvalidIdentityError(f"invalid address {address!r}: no identity found")
    return normalize_identity(local_part, country_code=country_code)


def identities_match(left: str, right: str, country_code: str = DEFAULT_COUNTRY_CODE) -> bool:
    try:
        return identity_from_address(left, country_code) == identity_from_address(right, country_code)
    except InvalidIdentityError:
        return False


def is_group_address(address: str) -> bool:
    return address.strip().endswith("@g.us")


def address_for_identity(identity: str) -> str:
    return f"{identity.lstrip('+')}@s.whatsapp.net"
