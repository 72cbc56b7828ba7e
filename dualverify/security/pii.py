"""PII detection and redaction.

Detection only affects what gets logged or persisted. It never decides
whether a request is admitted.
"""

import re
from dataclasses import dataclass

import phonenumbers
from email_validator import EmailNotValidError, validate_email

REDACTION_TEMPLATE = "[REDACTED:{kind}]"


@dataclass(frozen=True)
class PIIMatch:
    kind: str
    start: int
    end: int
    text: str


class PIIDetector:
    """Pattern-based scanner for personal data in free text.

    Emails are confirmed with email-validator and phone numbers with
    libphonenumber; government IDs, card numbers, IP addresses and API
    keys are matched by pattern.
    """

    EMAIL_RE = re.compile(
        r"\b[A-Za-z0-9][A-Za-z0-9._%+-]*@[A-Za-z0-9][A-Za-z0-9.-]*\.[A-Za-z]{2,}\b"
    )

    PATTERNS: dict[str, re.Pattern] = {
        "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
        "credit_card": re.compile(r"\b(?:\d{4}[\s-]?){3}\d{4}\b|\b3[47]\d{2}[\s-]?\d{6}[\s-]?\d{5}\b"),
        "uk_nino": re.compile(r"\b[A-CEGHJ-PR-TW-Z]{2}\s?\d{2}\s?\d{2}\s?\d{2}\s?[A-D]\b"),
        "iban": re.compile(r"\b[A-Z]{2}\d{2}(?:\s?[A-Z0-9]{4}){3,7}(?:\s?[A-Z0-9]{1,3})?\b"),
        "ip_address": re.compile(r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b"),
        "api_key": re.compile(
            r"\b(?:sk|pk|rk)[-_](?:live_|test_)?[A-Za-z0-9_\-]{16,}\b"
            r"|\bAKIA[0-9A-Z]{16}\b"
            r"|\bgh[pousr]_[A-Za-z0-9]{36}\b"
            r"|\bAIza[0-9A-Za-z_\-]{35}\b"
        ),
    }

    def __init__(self, default_region: str = "US", detect_phones: bool = True):
        """Initialize the detector.

        Args:
            default_region: Region used to parse phone numbers without a country code
            detect_phones: Disable to skip the (slower) libphonenumber scan
        """
        self.default_region = default_region
        self.detect_phones = detect_phones

    def detect(self, text: str) -> list[PIIMatch]:
        """Find PII spans, non-overlapping and ordered by position."""
        if not text:
            return []

        candidates: list[PIIMatch] = []
        for kind, pattern in self.PATTERNS.items():
            for m in pattern.finditer(text):
                candidates.append(PIIMatch(kind, m.start(), m.end(), m.group(0)))

        for m in self.EMAIL_RE.finditer(text):
            try:
                validate_email(m.group(0), check_deliverability=False)
            except EmailNotValidError:
                continue
            candidates.append(PIIMatch("email", m.start(), m.end(), m.group(0)))

        if self.detect_phones:
            candidates.extend(self._find_phones(text))

        # Longest span wins on overlap, earlier span wins on ties
        candidates.sort(key=lambda c: (c.start, -(c.end - c.start)))
        selected: list[PIIMatch] = []
        for candidate in candidates:
            if selected and candidate.start < selected[-1].end:
                last = selected[-1]
                if (candidate.end - candidate.start) > (last.end - last.start):
                    selected[-1] = candidate
                continue
            selected.append(candidate)
        return selected

    def _find_phones(self, text: str) -> list[PIIMatch]:
        matcher = phonenumbers.PhoneNumberMatcher(
            text, self.default_region, leniency=phonenumbers.Leniency.POSSIBLE
        )
        return [PIIMatch("phone", m.start, m.end, m.raw_string) for m in matcher]

    def kinds(self, text: str) -> set[str]:
        return {m.kind for m in self.detect(text)}

    def redact(self, text: str) -> str:
        """Replace every detected span with a ``[REDACTED:KIND]`` marker."""
        matches = self.detect(text)
        if not matches:
            return text
        parts = []
        cursor = 0
        for m in matches:
            parts.append(text[cursor:m.start])
            parts.append(REDACTION_TEMPLATE.format(kind=m.kind.upper()))
            cursor = m.end
        parts.append(text[cursor:])
        return "".join(parts)


_default_detector: PIIDetector | None = None


def get_pii_detector() -> PIIDetector:
    """Shared stateless detector used by the logging filter."""
    global _default_detector
    if _default_detector is None:
        _default_detector = PIIDetector()
    return _default_detector


def redact_pii(text: str) -> str:
    return get_pii_detector().redact(text)
