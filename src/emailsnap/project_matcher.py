"""Keyword-based project matching, no AI involved."""

from __future__ import annotations

import re
from typing import Iterable, Protocol

NAME_SCORE = 3
KEYWORD_SCORE = 1

_REPLY_PREFIX = re.compile(r"^(re:|fwd:|fw:)\s*", re.IGNORECASE)


class MatchableProject(Protocol):
    id: int
    name: str
    keywords: list[str]


class MatchableMessage(Protocol):
    id: str
    subject: str


def clean_subject(subject: str) -> str:
    """Lowercase a subject and strip one leading reply/forward prefix."""
    return _REPLY_PREFIX.sub("", (subject or "").lower(), count=1)


def score_project(cleaned_subject: str, project: MatchableProject) -> int:
    """Name substring is worth 3, every keyword substring 1."""
    score = 0
    if project.name and project.name.lower() in cleaned_subject:
        score += NAME_SCORE
    for keyword in project.keywords:
        if not keyword:
            continue
        if keyword.lower() in cleaned_subject:
            score += KEYWORD_SCORE
    return score


def match_one(subject: str, projects: Iterable[MatchableProject]) -> int | None:
    """Return the id of the best scoring project, or None.

    Only a strictly higher score replaces the current best, so ties go to
    the project seen first.
    """
    cleaned = clean_subject(subject)
    best_id: int | None = None
    best_score = 0

    for project in projects:
        score = score_project(cleaned, project)
        if score > best_score:
            best_score = score
            best_id = project.id

    return best_id


def match_many(
    messages: Iterable[MatchableMessage], projects: Iterable[MatchableProject]
) -> list[tuple[str, int]]:
    """Match every message independently, omitting those with no match."""
    candidates = list(projects)
    if not candidates:
        return []

    results: list[tuple[str, int]] = []
    for message in messages:
        project_id = match_one(message.subject, candidates)
        if project_id is not None:
            results.append((message.id, project_id))
    return results
