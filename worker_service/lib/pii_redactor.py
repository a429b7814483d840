"""PII redaction for log output.

Notification jobs carry recipient addresses and phone numbers; they must
never reach a log line in plaintext.
"""

import re
from typing import Any, Optional


class PIIRedactor:
    """Redact recipient identifiers and payment data from log text."""

    PATTERNS = {
        'email': r'\b[\w.+-]+@[\w.-]+\.\w{2,}\b',
        'phone': r'(?<![\w-])\+\d{1,3}[\s\d/()-]{6,}\d\b',
        'iban': r'\b[A-Z]{2}\d{2}\s?(?:[\dA-Z]{4}\s?){3,5}[\dA-Z]{0,4}\b',
        'credit_card': r'\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b',
    }

    @classmethod
    def redact(cls, text: Optional[str]) -> str:
        """
        Redact PII from text.

        Returns:
            Text with each match replaced by [TYPE_REDACTED]
        """
        if not text:
            return ""

        result = text
        for name, pattern in cls.PATTERNS.items():
            result = re.sub(pattern, f'[{name.upper()}_REDACTED]', result)
        return result

    @classmethod
    def redact_for_logging(cls, text: Optional[str]) -> str:
        return cls.redact(text)

    @classmethod
    def redact_value(cls, value: Any) -> Any:
        """Redact strings nested in lists and dicts, leave other values alone."""
        if isinstance(value, str):
            return cls.redact(value)
        if isinstance(value, list):
            return [cls.redact_value(v) for v in value]
        if isinstance(value, dict):
            return {k: cls.redact_value(v) for k, v in value.items()}
        return value

    @classmethod
    def contains_pii(cls, text: Optional[str]) -> bool:
        """Check if text contains any PII patterns."""
        if not text:
            return False
        return any(re.search(pattern, text) for pattern in cls.PATTERNS.values())
