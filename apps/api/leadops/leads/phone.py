from __future__ import annotations

import re

from leadops.core.config import get_settings
from leadops.errors import InvalidContactError


_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str | None) -> str:
    """Canonical digits-only phone with country code and the mobile ninth digit.

    "11999887766" -> "5511999887766"
    "1198765432" -> "5511998765432"
    "551198765432" -> "5511998765432"
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if not digits:
        raise InvalidContactError(raw)

    country_code = get_settings().default_country_code

    if len(digits) in (10, 11):
        digits = f"{country_code}{digits}"

    # Landlines start with 2-5; mobiles lost their ninth digit only when it was omitted.
    if len(digits) == 12 and digits.startswith(country_code):
        area_code = digits[2:4]
        local = digits[4:]
        if not local.startswith("0"):
            digits = f"{country_code}{area_code}9{local}"

    return digits
