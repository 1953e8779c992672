"""PII (Personally Identifiable Information) redaction utilities.

Job payloads and handler errors routinely carry homeowner and contractor
contact details; they are scrubbed before anything is logged.
"""

import re
from typing import Any, Optional


class PIIRedactor:
    """Redact PII from text before logging."""

    PATTERNS = {
        'email': r'\b[\w.+-]+@[\w.-]+\.\w{2,}\b',
        'ssn': r'\b\d{3}-\d{2}-\d{4}\b',
        'credit_card': r'\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b',
        'phone_us': r'(?<!\w)(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]\d{4}\b',
        'phone_intl': r'(?<!\w)\+\d{1,3}[\s]?[\d\s/()-]{6,}\d\b',
    }

    # Additional patterns that are more aggressive (optional)
    AGGRESSIVE_PATTERNS = {
        'street_address': r'\b\d{1,6}\s+(?:[A-Z][a-z]+\s){1,3}(?:St|Street|Ave|Avenue|Rd|Road|Blvd|Dr|Drive|Ln|Lane|Ct|Court|Way)\b\.?',
    }

    @classmethod
    def redact(cls, text: Optional[str], aggressive: bool = False) -> str:
        """
        Redact PII from text.

        Args:
            text: Text to redact
            aggressive: If True, also redact street addresses

        Returns:
            Redacted text with PII replaced by [TYPE_REDACTED]
        """
        if not text:
            return ""

        result = text
        for name, pattern in cls.PATTERNS.items():
            result = re.sub(pattern, f'[{name.upper()}_REDACTED]', result, flags=re.IGNORECASE)

        if aggressive:
            for name, pattern in cls.AGGRESSIVE_PATTERNS.items():
                result = re.sub(pattern, f'[{name.upper()}_REDACTED]', result)

        return result

    @classmethod
    def redact_for_logging(cls, text: Optional[str]) -> str:
        """
        Redact PII for logging purposes.

        More aggressive - remove all potentially sensitive data.
        """
        return cls.redact(text, aggressive=True)

    @classmethod
    def redact_value(cls, value: Any) -> Any:
        """Redact strings nested anywhere inside dicts and lists."""
        if isinstance(value, str):
            return cls.redact_for_logging(value)
        if isinstance(value, dict):
            return {k: cls.redact_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [cls.redact_value(v) for v in value]
        return value
