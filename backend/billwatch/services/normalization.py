"""
Merchant name normalization.

Every transaction is reduced to a merchant key before grouping. Two
transactions with the same key are treated as the same billing relationship.
"""

import re
from typing import Optional

_WHITESPACE = re.compile(r"\s+")
_STORE_NUMBER = re.compile(r"\s*#\d+.*$")
_TRAILING_DIGITS = re.compile(r"\s*\d{4,}$")


def _canonicalize(name: str) -> str:
    name = _WHITESPACE.sub(" ", name.strip())
    name = _STORE_NUMBER.sub("", name)
    name = _TRAILING_DIGITS.sub("", name)
    return " ".join(word[:1].upper() + word[1:].lower() for word in name.split(" ") if word)


def normalize_merchant(raw_description: Optional[str], merchant_hint: Optional[str] = None) -> Optional[str]:
    """
    Canonicalize a description into a merchant key.

    The AI-assigned merchant name wins when present. Store numbers
    ("#1234 ...") and trailing 4+ digit runs are stripped, whitespace is
    collapsed and each word is capitalized.

    Returns None when nothing usable is left.

        >>> normalize_merchant("NETFLIX.COM  #8841 CA")
        'Netflix.com'
        >>> normalize_merchant("SPOTIFY USA 20240501")
        'Spotify Usa'
    """
    source = merchant_hint if merchant_hint and merchant_hint.strip() else raw_description
    if not source:
        return None

    # Stripping one suffix can expose another ("ACME 1234 5678"), so repeat
    # until the key is stable.
    name = _canonicalize(source)
    previous = None
    while name != previous:
        previous = name
        name = _canonicalize(name)

    if not name or name.lower() == "unknown":
        return None
    return name
