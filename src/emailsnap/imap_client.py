"""IMAP client fetching message metadata from the INBOX."""

from __future__ import annotations

import imaplib
import json
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

from emailsnap.email_parser import EmailParser, parse_timestamp
from emailsnap.models import RawMessage

if TYPE_CHECKING:
    from emailsnap.config import ImapConfig

logger = logging.getLogger(__name__)

FETCH_LIMIT = 50
FIRST_RUN_DAYS = 7

_MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
_UID_RE = re.compile(rb"UID (\d+)")


class MailErrorKind(str, Enum):
    """Why a mail-client call failed."""

    AUTH = "auth"
    CONNECTION = "connection"
    PROTOCOL = "protocol"


class MailClientError(Exception):
    """Mail client failure carrying a machine-readable kind."""

    def __init__(self, message: str, kind: MailErrorKind):
        super().__init__(message)
        self.kind = kind

    @property
    def is_auth_failure(self) -> bool:
        return self.kind == MailErrorKind.AUTH


def imap_date(value: datetime) -> str:
    """Format a date the way IMAP SEARCH expects (DD-Mon-YYYY)."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


class IMAPClient:
    """Read-only IMAP client for EmailSnap."""

    def __init__(self, config: ImapConfig, parser: EmailParser | None = None):
        """Initialize the IMAP client."""
        self.config = config
        self.parser = parser or EmailParser()
        self._connection: imaplib.IMAP4_SSL | None = None

    def __enter__(self) -> IMAPClient:
        self.connect()
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.disconnect()

    def connect(self) -> None:
        """Connect and log in.

        Raises:
            MailClientError: CONNECTION if the server is unreachable,
                AUTH if the credentials are rejected
        """
        logger.debug(json.dumps({"event": "connecting", "host": self.config.host, "port": self.config.port}))

        try:
            self._connection = imaplib.IMAP4_SSL(
                self.config.host,
                self.config.port,
                timeout=self.config.timeout,
            )
        except (OSError, TimeoutError) as e:
            raise MailClientError(
                f"Cannot connect to {self.config.host}:{self.config.port}: {e}",
                MailErrorKind.CONNECTION,
            ) from e

        try:
            self._connection.login(self.config.email, self.config.get_password())
            logger.debug(json.dumps({"event": "logged_in", "email": self.config.email}))
        except imaplib.IMAP4.abort as e:
            self._connection = None
            raise MailClientError(f"Connection dropped during login: {e}", MailErrorKind.CONNECTION) from e
        except imaplib.IMAP4.error as e:
            self._connection = None
            raise MailClientError(
                f"Authentication failed for {self.config.email}", MailErrorKind.AUTH
            ) from e

    def disconnect(self) -> None:
        """Log out from the IMAP server."""
        if self._connection:
            try:
                self._connection.logout()
            except Exception as e:
                logger.warning(f"Error during logout: {e}")
            finally:
                self._connection = None

    def fetch_since(self, since: str | None, limit: int = FETCH_LIMIT) -> list[RawMessage]:
        """Fetch metadata of INBOX messages received strictly after `since`.

        IMAP SEARCH SINCE only has day granularity, so the result is
        filtered locally against the exact watermark.
        """
        if not self._connection:
            raise RuntimeError("Not connected")

        since_dt = parse_timestamp(since) if since else None

        try:
            status, data = self._connection.select("INBOX", readonly=True)
            if status != "OK":
                raise MailClientError(f"Select INBOX failed: {data}", MailErrorKind.PROTOCOL)

            if since_dt:
                search_from = since_dt - timedelta(days=1)
            else:
                search_from = datetime.now(timezone.utc) - timedelta(days=FIRST_RUN_DAYS)

            status, data = self._connection.uid("SEARCH", None, "SINCE", imap_date(search_from))
            if status != "OK":
                raise MailClientError(f"Search failed: {data}", MailErrorKind.PROTOCOL)

            uids = sorted(int(u) for u in (data[0] or b"").split())
            if not uids:
                return []

            # Newest UIDs only
            uid_set = ",".join(str(u) for u in sorted(uids, reverse=True)[:limit])
            status, data = self._connection.uid(
                "FETCH",
                uid_set,
                "(UID INTERNALDATE BODY.PEEK[HEADER.FIELDS (FROM SUBJECT MESSAGE-ID DATE)])",
            )
            if status != "OK":
                raise MailClientError(f"Fetch failed: {data}", MailErrorKind.PROTOCOL)
        except imaplib.IMAP4.abort as e:
            raise MailClientError(f"Connection lost: {e}", MailErrorKind.CONNECTION) from e
        except imaplib.IMAP4.error as e:
            raise MailClientError(f"IMAP error: {e}", MailErrorKind.PROTOCOL) from e
        except OSError as e:
            raise MailClientError(f"Connection error: {e}", MailErrorKind.CONNECTION) from e

        messages: list[RawMessage] = []
        for item in data:
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            prefix, header_bytes = item[0], item[1]
            uid_match = _UID_RE.search(prefix)
            if not uid_match:
                logger.debug(f"Skipping fetch item without UID: {prefix[:80]!r}")
                continue

            internal_date = self._parse_internaldate(prefix)
            raw = self.parser.parse_envelope(int(uid_match.group(1)), header_bytes, internal_date)

            if since_dt is not None:
                received = parse_timestamp(raw.received_at)
                if received is not None and received <= since_dt:
                    continue
            messages.append(raw)

        messages.sort(key=lambda m: m.received_at, reverse=True)
        logger.info(json.dumps({"event": "fetched", "count": len(messages)}))
        return messages

    def _parse_internaldate(self, prefix: bytes) -> datetime | None:
        parsed = imaplib.Internaldate2tuple(prefix)
        if parsed is None:
            return None
        return datetime.fromtimestamp(time.mktime(parsed), tz=timezone.utc)


def fetch_messages(credentials: ImapConfig, since: str | None) -> list[RawMessage]:
    """Connect, fetch everything newer than `since`, disconnect."""
    with IMAPClient(credentials) as client:
        return client.fetch_since(since)


def check_connection(credentials: ImapConfig) -> None:
    """Log in and out once; raises MailClientError on failure."""
    with IMAPClient(credentials):
        pass
