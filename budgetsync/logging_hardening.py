"""Logging Hardening and Redaction.

This module provides filters to prevent sensitive data (encrypted records,
derived key material, phone numbers) from appearing in application logs.
"""
import logging
import re

SECRET_PATTERNS = [
    # EncryptedRecord: 32 hex IV, colon, hex ciphertext
    (re.compile(r'\b[0-9a-f]{32}:[0-9a-f]{32,}\b'), '[REDACTED_RECORD]'),
    # Keyword-based key material
    (re.compile(r'(key=)[0-9a-fA-F]{16,}'), r'\1[REDACTED]'),
    (re.compile(r'("key":\s*")[^"]+(")'), r'\1[REDACTED]\2'),
    # Phone numbers: keep the last 4 digits for correlation
    (re.compile(r'(?<![\w:])\+?\d{6,11}(\d{4})\b'), r'******\1'),
]


def redact_text(text: str) -> str:
    """Redact sensitive patterns from a string."""
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Filter that redacts secret-like patterns from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)

        # Also redact arguments if they are strings
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                redact_text(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )

        return True


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging and apply the SecretRedactionFilter everywhere."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    redact_filter = SecretRedactionFilter()

    root_logger = logging.getLogger()

    # Remove existing filters if any (to avoid duplicates)
    for f in root_logger.filters[:]:
        if isinstance(f, SecretRedactionFilter):
            root_logger.removeFilter(f)
    root_logger.addFilter(redact_filter)

    # Handlers too, so records from child loggers are covered
    for handler in root_logger.handlers:
        for f in handler.filters[:]:
            if isinstance(f, SecretRedactionFilter):
                handler.removeFilter(f)
        handler.addFilter(redact_filter)

    for name in logging.root.manager.loggerDict:
        logger = logging.getLogger(name)
        if not any(isinstance(f, SecretRedactionFilter) for f in logger.filters):
            logger.addFilter(redact_filter)

    logging.info("Logging redaction filters active.")
