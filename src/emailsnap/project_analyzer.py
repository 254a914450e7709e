"""Project assignment: AI grouping of unassigned mail and keyword matching of new mail."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from emailsnap.project_matcher import match_many
from emailsnap.structured_logger import StructuredLogger

if TYPE_CHECKING:
    from emailsnap.llm_client import LLMClient, ProjectAssignment
    from emailsnap.models import Message
    from emailsnap.storage import Storage

logger = logging.getLogger(__name__)

ANALYSIS_BATCH_SIZE = 15


@dataclass
class AnalysisReport:
    """Outcome of one AI analysis run."""

    processed: int = 0
    assigned: int = 0
    batches: int = 0
    created_projects: list[str] = field(default_factory=list)
    stopped_early: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "processed": self.processed,
            "assigned": self.assigned,
            "batches": self.batches,
            "created_projects": self.created_projects,
            "stopped_early": self.stopped_early,
            "error": self.error,
        }


class ProjectAnalyzer:
    """Assigns messages to projects, creating projects on demand."""

    def __init__(
        self,
        storage: Storage,
        llm_client: LLMClient | None = None,
        batch_size: int = ANALYSIS_BATCH_SIZE,
        diagnostics: StructuredLogger | None = None,
    ):
        self.storage = storage
        self.llm_client = llm_client
        self.batch_size = batch_size
        self.diagnostics = diagnostics or StructuredLogger()

    def analyze_and_assign(self) -> AnalysisReport:
        """Group all unassigned messages with the LLM, batch by batch.

        Batches run sequentially. The first failed or empty batch ends the
        run; assignments already written are kept.
        """
        report = AnalysisReport()
        if self.llm_client is None:
            report.error = "AI is not configured"
            return report

        unassigned = self.storage.get_unassigned_messages()
        if not unassigned:
            logger.info("No unassigned messages to analyze")
            return report

        known_names = self.storage.get_project_names()
        logger.info(
            f"Analyzing {len(unassigned)} unassigned messages against {len(known_names)} projects"
        )

        for start in range(0, len(unassigned), self.batch_size):
            batch = unassigned[start : start + self.batch_size]

            response = self.llm_client.analyze_projects(batch, list(known_names))
            if not response.success:
                self._stop(report, response.error or "unknown error")
                break

            assignments: list[ProjectAssignment] = response.result or []
            if not assignments:
                self._stop(report, "AI returned no assignments")
                break

            report.batches += 1
            report.processed += len(batch)
            self._apply_batch(batch, assignments, known_names, report)

        logger.info(
            f"Project analysis done: {report.assigned} assigned in {report.batches} batches"
            + (" (stopped early)" if report.stopped_early else "")
        )
        return report

    def _apply_batch(
        self,
        batch: list[Message],
        assignments: list[ProjectAssignment],
        known_names: list[str],
        report: AnalysisReport,
    ) -> None:
        """Write one batch's assignments and merge its keywords."""
        batch_ids = {m.id for m in batch}
        keywords_by_project: dict[str, list[str]] = {}

        for assignment in assignments:
            if not assignment.project_name:
                continue
            if assignment.mail_id not in batch_ids:
                logger.debug(f"Ignoring assignment for unknown message {assignment.mail_id}")
                continue

            project_id = self.storage.get_or_create_project(assignment.project_name)
            self.storage.assign_message_to_project(assignment.mail_id, project_id)
            report.assigned += 1

            if assignment.project_name not in known_names:
                known_names.append(assignment.project_name)
                report.created_projects.append(assignment.project_name)

            seen = keywords_by_project.setdefault(assignment.project_name, [])
            seen.extend(k.strip() for k in assignment.keywords if k and k.strip())

        if not keywords_by_project:
            return

        stored = {p.name: p for p in self.storage.get_projects_for_matching()}
        for name, new_keywords in keywords_by_project.items():
            project = stored.get(name)
            if project is None or not new_keywords:
                continue
            # Union with what is stored; never overwrite
            merged = list(dict.fromkeys([*project.keywords, *new_keywords]))
            if merged != project.keywords:
                self.storage.update_project_keywords(project.id, merged)

    def _stop(self, report: AnalysisReport, error: str) -> None:
        logger.warning(f"Stopping project analysis: {error}")
        self.diagnostics.log_ai_failure("analyze", error)
        report.stopped_early = True
        report.error = error

    def assign_new_messages(self, messages: list[Message]) -> int:
        """Keyword-match freshly inserted messages to existing projects.

        Used as a scheduler subscriber, so errors are logged, not raised.
        """
        if not messages:
            return 0

        try:
            projects = self.storage.get_projects_for_matching()
            if not projects:
                return 0

            matches = match_many(messages, projects)
            for message_id, project_id in matches:
                self.storage.assign_message_to_project(message_id, project_id)
        except Exception as e:
            logger.error(f"Failed to match new messages to projects: {e}")
            return 0

        logger.info(f"Keyword match: {len(matches)}/{len(messages)} assigned")
        return len(matches)
