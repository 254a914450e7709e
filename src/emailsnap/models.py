"""Domain records shared by the storage, classifiers and scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class MailCategory(str, Enum):
    """Fixed set of categories a message can be filed under."""

    URGENT = "urgent"
    APPROVAL = "approval"
    EXTERNAL = "external"
    INTERNAL = "internal"
    SYSTEM = "system"
    UNCATEGORIZED = "uncategorized"

    @classmethod
    def is_known(cls, value: str) -> bool:
        return value in {c.value for c in cls}


class MatchType(str, Enum):
    """How a category rule inspects a message."""

    SUBJECT_CONTAINS = "subject_contains"
    SENDER_DOMAIN = "sender_domain"
    SENDER_CONTAINS = "sender_contains"


# Sentinel match values for sender_domain rules
EXTERNAL_SENTINEL = "__EXTERNAL__"
INTERNAL_SENTINEL = "__INTERNAL__"

DEFAULT_WEB_LINK = "https://mail.worksmobile.com"

CATEGORY_CONFIG: dict[str, dict[str, str]] = {
    MailCategory.URGENT.value: {"label": "긴급", "color": "#EF4444", "emoji": "🔴"},
    MailCategory.APPROVAL.value: {"label": "결재", "color": "#F59E0B", "emoji": "🟡"},
    MailCategory.EXTERNAL.value: {"label": "외부", "color": "#3B82F6", "emoji": "🔵"},
    MailCategory.INTERNAL.value: {"label": "내부", "color": "#22C55E", "emoji": "🟢"},
    MailCategory.SYSTEM.value: {"label": "시스템", "color": "#6B7280", "emoji": "⚙️"},
    MailCategory.UNCATEGORIZED.value: {"label": "미분류", "color": "#9CA3AF", "emoji": "📧"},
}

PROJECT_COLORS = [
    "#6366F1",
    "#EC4899",
    "#14B8A6",
    "#F97316",
    "#8B5CF6",
    "#06B6D4",
    "#84CC16",
    "#E11D48",
]


def category_display(category: str) -> dict[str, str]:
    """Display metadata for a category, falling back to 'uncategorized'."""
    return CATEGORY_CONFIG.get(category, CATEGORY_CONFIG[MailCategory.UNCATEGORIZED.value])


@dataclass
class RawMessage:
    """Message metadata as returned by the mail client."""

    id: str
    sender_name: str
    sender_email: str
    subject: str
    received_at: str
    message_id: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "sender_name": self.sender_name,
            "sender_email": self.sender_email,
            "subject": self.subject,
            "received_at": self.received_at,
            "message_id": self.message_id,
        }


@dataclass
class Message:
    """A stored mail record."""

    id: str
    sender_name: str
    sender_email: str
    subject: str
    received_at: str
    category: str = MailCategory.UNCATEGORIZED.value
    web_link: str = DEFAULT_WEB_LINK
    notified: bool = False
    is_read: bool = False
    project_id: int | None = None
    message_id: str = ""
    created_at: str | None = None

    @classmethod
    def from_raw(
        cls, raw: RawMessage, category: str, web_link: str = DEFAULT_WEB_LINK
    ) -> Message:
        """Build a fresh, unread, unassigned record from fetched metadata."""
        return cls(
            id=raw.id,
            sender_name=raw.sender_name,
            sender_email=raw.sender_email,
            subject=raw.subject,
            received_at=raw.received_at,
            category=category,
            web_link=web_link,
            notified=False,
            is_read=False,
            project_id=None,
            message_id=raw.message_id,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "sender_name": self.sender_name,
            "sender_email": self.sender_email,
            "subject": self.subject,
            "received_at": self.received_at,
            "category": self.category,
            "web_link": self.web_link,
            "notified": self.notified,
            "is_read": self.is_read,
            "project_id": self.project_id,
            "message_id": self.message_id,
            "created_at": self.created_at,
        }


@dataclass
class CategoryRule:
    """An ordered predicate mapping a message to a category."""

    name: str
    priority: int
    match_type: str
    match_value: str
    color: str = "#9CA3AF"
    notify: bool = True
    is_default: bool = False
    id: int | None = None

    @property
    def values(self) -> list[str]:
        """Comma-separated match terms, stripped and lowercased."""
        return [v.strip().lower() for v in self.match_value.split(",")]

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "match_type": self.match_type,
            "match_value": self.match_value,
            "color": self.color,
            "notify": self.notify,
            "is_default": self.is_default,
        }


@dataclass
class Project:
    """A named grouping of related messages."""

    id: int
    name: str
    color: str
    keywords: list[str] = field(default_factory=list)
    mail_count: int = 0
    unread_count: int = 0
    latest_mail_at: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "keywords": list(self.keywords),
            "mail_count": self.mail_count,
            "unread_count": self.unread_count,
            "latest_mail_at": self.latest_mail_at,
        }


@dataclass
class MailStats:
    """Total and unread message counts."""

    total: int = 0
    unread: int = 0

    def to_dict(self) -> dict:
        return {"total": self.total, "unread": self.unread}
