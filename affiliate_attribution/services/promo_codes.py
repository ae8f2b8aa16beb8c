"""
Promo / referral code extraction from raw intake form payloads.

Intake forms come from several builders (Heyflow, Airtable, custom pages) and
each names the code field differently. Lookup order:
  1. explicit code fields (promo, influencer, referral, affiliate, partner)
  2. "who recommended / how did you hear" answers
  3. referrer and landing URL fields
  4. any other string value that is an affiliate URL
"""
from __future__ import annotations

import re
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

_CODE_KINDS = ("promo", "influencer", "referral", "affiliate", "partner")

CODE_FIELDS: list[str] = []
for _kind in _CODE_KINDS:
    CODE_FIELDS += [
        f"{_kind}-code",
        f"{_kind}Code",
        f"{_kind}_code",
        f"{_kind.upper()} CODE",
        f"{_kind.title()} Code",
    ]

RECOMMENDATION_FIELDS = [
    "Who recommended us?",
    "Who Recommended Us?",
    "who-recommended",
    "whoRecommended",
    "who_recommended",
    "How did you hear about us?",
]

URL_FIELDS = [
    "Referrer",
    "referrer",
    "referrer_url",
    "referrerUrl",
    "URL with parameters",
    "URL",
    "landing_page",
    "landingPage",
]

# Free-text answers that name a channel, not a person or code
GENERIC_SOURCES = frozenset({
    "instagram", "ig", "facebook", "fb", "tiktok", "youtube", "google", "bing",
    "twitter", "x", "reddit", "podcast", "friend", "a friend", "family",
    "doctor", "online", "internet", "search", "ad", "ads", "advertisement",
    "other", "none", "no", "n/a", "na", "-",
})

_AFFILIATE_PATH = re.compile(r"/affiliate/([A-Za-z0-9_-]+)")
_RECOMMENDATION_HINT = re.compile(r"who\s*[-_ ]?\s*rec+om+ended", re.IGNORECASE)


def _is_url(value: str) -> bool:
    return value.lower().startswith(("http://", "https://"))


def extract_ref_code_from_url(value: Optional[str]) -> Optional[str]:
    """Pull an affiliate code from an http(s) URL.

    Recognises `/affiliate/<CODE>` paths and `ref=<CODE>` in the query string
    or the fragment (hash routers put params there).
    """
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    if not _is_url(value):
        return None

    parsed = urlparse(value)
    match = _AFFILIATE_PATH.search(parsed.path)
    if match:
        return match.group(1).upper()

    for part in (parsed.query, parsed.fragment.split("?", 1)[-1]):
        refs = parse_qs(part).get("ref")
        if refs and refs[0].strip():
            return refs[0].strip().upper()
    return None


def _code_from_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if _is_url(text):
        # Bare URLs without a code are not codes
        return extract_ref_code_from_url(text)
    if text.lower() in GENERIC_SOURCES:
        return None
    return text.upper()


def extract_promo_code(payload: dict[str, Any]) -> Optional[str]:
    """Best-effort code from an intake payload, uppercased, or None."""
    if not payload:
        return None

    for field in CODE_FIELDS:
        code = _code_from_text(payload.get(field))
        if code:
            return code

    recommendation_keys = list(RECOMMENDATION_FIELDS) + [
        k for k in payload if isinstance(k, str) and _RECOMMENDATION_HINT.search(k)
    ]
    for field in recommendation_keys:
        code = _code_from_text(payload.get(field))
        if code:
            return code

    for field in URL_FIELDS:
        code = extract_ref_code_from_url(payload.get(field))
        if code:
            return code

    for value in payload.values():
        code = extract_ref_code_from_url(value)
        if code:
            return code
    return None
