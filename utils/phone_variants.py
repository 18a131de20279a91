"""
Best-effort phone matching for user records.

Stored phones come in whatever shape the signup form accepted: "+9639...",
"9639...", "09...", "9...". Given a number, produce every shape it could have
been stored in. This is not an E.164 parser and can match the wrong record
when two accounts share an ambiguous local/international form.
"""

from __future__ import annotations

from typing import Set

# Longest codes first so "963" wins over a shorter prefix.
KNOWN_COUNTRY_CODES = ("963", "962", "961", "964", "966", "971", "20", "90")


def _international(national: str) -> Set[str]:
    out: Set[str] = set()
    for cc in KNOWN_COUNTRY_CODES:
        out.add(f"{cc}{national}")
        out.add(f"+{cc}{national}")
    return out


def phone_variants(phone: str) -> Set[str]:
    raw = str(phone or "").strip()
    if not raw:
        return set()

    variants = {raw}
    had_plus = raw.startswith("+")
    digits = raw.lstrip("+")
    if not digits.isdigit():
        return variants
    variants.add(digits)

    if had_plus or not digits.startswith("0"):
        for cc in KNOWN_COUNTRY_CODES:
            if digits.startswith(cc) and len(digits) > len(cc):
                national = digits[len(cc):]
                variants.update({f"+{digits}", national, f"0{national}"})
                return variants

    if digits.startswith("0"):
        national = digits.lstrip("0")
        if national:
            variants.add(national)
            variants.update(_international(national))
        return variants

    if not had_plus:
        # Bare national number with the trunk zero dropped.
        variants.add(f"0{digits}")
        variants.add(f"+{digits}")
        variants.update(_international(digits))
    return variants
