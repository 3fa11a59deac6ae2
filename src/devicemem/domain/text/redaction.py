from __future__ import annotations

import re

_URL_RE = re.compile(r"https?://\S+", flags=re.IGNORECASE)
_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", flags=re.IGNORECASE)
_NATIONAL_ID_RE = re.compile(r"\b\d{11}\b")
_PHONE_RE = re.compile(r"\+?\d[\d\s().-]{7,}\d")

# Applied in order: URLs and e-mails may contain digit runs that the
# phone pattern would otherwise consume.
_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (_URL_RE, "[URL]"),
    (_EMAIL_RE, "[EMAIL]"),
    (_NATIONAL_ID_RE, "[ID]"),
    (_PHONE_RE, "[PHONE]"),
)


def redact_sensitive(text: str) -> str:
    value = str(text or "")
    for pattern, placeholder in _RULES:
        value = pattern.sub(placeholder, value)
    return value
