"""Header parsing for fetched mail metadata."""

from __future__ import annotations

import email
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.utils import parseaddr, parsedate_to_datetime

from emailsnap.models import RawMessage

logger = logging.getLogger(__name__)

NO_SUBJECT = "(제목 없음)"


@dataclass
class EmailAddress:
    """Parsed email address with display name."""

    name: str
    address: str
    domain: str

    @classmethod
    def parse(cls, value: str | None) -> EmailAddress | None:
        """Parse an email address string."""
        if not value:
            return None
        name, addr = parseaddr(value)
        if not addr:
            return None
        domain = addr.split("@")[-1].lower() if "@" in addr else ""
        return cls(name=name, address=addr.lower(), domain=domain)

    def __str__(self) -> str:
        if self.name:
            return f"{self.name} <{self.address}>"
        return self.address


def normalize_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with second precision, so string order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_timestamp(value: str) -> datetime | None:
    """Parse a stored ISO timestamp; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class EmailParser:
    """Turns IMAP header blocks into RawMessage records."""

    MAX_HEADER_CHARS = 500

    def parse_envelope(
        self,
        uid: int | str,
        header_bytes: bytes,
        internal_date: datetime | None = None,
    ) -> RawMessage:
        """Parse a FROM/SUBJECT/MESSAGE-ID/DATE header block."""
        message = email.message_from_bytes(header_bytes)

        sender = EmailAddress.parse(self._decode_header(message.get("From", "")))
        subject = self._sanitize(self._decode_header(message.get("Subject", "")))
        message_id = self._decode_header(message.get("Message-ID", "")).strip().strip("<>")

        received = internal_date or self._parse_date(message.get("Date", ""))
        if received is None:
            logger.debug(f"No usable date for UID {uid}, using current time")
            received = datetime.now(timezone.utc)

        return RawMessage(
            id=str(uid),
            sender_name=self._sanitize(sender.name) if sender else "",
            sender_email=sender.address if sender else "",
            subject=subject or NO_SUBJECT,
            received_at=normalize_timestamp(received),
            message_id=message_id,
        )

    def _parse_date(self, value: str) -> datetime | None:
        if not value:
            return None
        try:
            return parsedate_to_datetime(value)
        except (ValueError, TypeError):
            return None

    def _decode_header(self, value: str | None) -> str:
        """Safely decode an RFC 2047 encoded header."""
        if not value:
            return ""
        try:
            decoded = decode_header(value)
            return str(make_header(decoded))
        except Exception:
            # Fallback for malformed headers
            if isinstance(value, bytes):
                return value.decode("utf-8", errors="replace")
            return str(value)

    def _sanitize(self, value: str) -> str:
        """Drop control characters and cap the length."""
        sanitized = re.sub(r"[\x00-\x1F\x7F-\x9F]", "", value or "").strip()
        if len(sanitized) > self.MAX_HEADER_CHARS:
            sanitized = sanitized[: self.MAX_HEADER_CHARS - 3] + "..."
        return sanitized
