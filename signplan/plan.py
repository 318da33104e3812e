"""Signing plan emission and the missing-certificate suggestions report."""

import os
from types import MappingProxyType
from typing import TYPE_CHECKING, List, Sequence
from xml.sax.saxutils import escape

from .logging import get_logger
from .models import MissingCertificateEntry, SigningPlan

if TYPE_CHECKING:
    from .tracking import RunContext

logger = get_logger("plan")

SUGGESTIONS_FILE_NAME = "SigningSuggestions.props"


class MissingCertificateError(Exception):
    """One or more discovered files have no certificate assigned."""

    def __init__(self, entries: Sequence[MissingCertificateEntry], report_path: str):
        self.entries = list(entries)
        self.report_path = report_path
        super().__init__(
            f"Discovered {len(self.entries)} unsigned file(s) that do not have assigned "
            f"certificates. Add the missing entries to the signing configuration; the files "
            f"and suggested certificates are listed in {report_path}"
        )


def _attribute(value: str) -> str:
    return escape(value, {"'": "&apos;"})


def format_suggestions(entries: Sequence[MissingCertificateEntry]) -> List[str]:
    """Render missing entries as an MSBuild item group for manual review."""
    lines = [
        "<!-- The file -> certificate mapping below was determined heuristically "
        "and must be reviewed before they are put in production code. --> ",
        "<Project>",
        "  <ItemGroup>",
    ]
    for entry in entries:
        lines.append(
            f"     <FileSignInfo Include='{_attribute(entry.file_name)}' "
            f"CertificateName='{_attribute(entry.suggested_certificate)}' />"
        )
    lines.extend(["  </ItemGroup>", "</Project>"])
    return lines


class PlanEmitter:
    """Turns the accumulated run state into a SigningPlan."""

    def __init__(self, suggestions_path: str):
        """
        Initialize emitter.

        Args:
            suggestions_path: File the suggestions report is appended to
        """
        self.suggestions_path = suggestions_path

    def write_suggestions(self, entries: Sequence[MissingCertificateEntry]) -> str:
        """
        Append the suggestions report for missing certificates.

        Returns:
            Path to the report
        """
        directory = os.path.dirname(self.suggestions_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(self.suggestions_path, "a", encoding="utf-8") as f:
            for line in format_suggestions(entries):
                f.write(line + "\n")

        return self.suggestions_path

    def emit(self, context: "RunContext") -> SigningPlan:
        """
        Assemble the signing plan.

        Args:
            context: Run state after all inputs were tracked

        Returns:
            Immutable SigningPlan

        Raises:
            MissingCertificateError: If any file lacks a certificate; the
                suggestions report is written first
        """
        if context.missing_certificates:
            report_path = self.write_suggestions(context.missing_certificates)
            error = MissingCertificateError(context.missing_certificates, report_path)
            logger.error(str(error))
            raise error

        plan = SigningPlan(
            files_to_sign=tuple(context.files_to_sign),
            containers=MappingProxyType(dict(context.containers)),
            files_to_copy=tuple(context.files_to_copy),
            failed_containers=tuple(context.failed_containers),
        )

        logger.info(
            f"Signing plan: {len(plan.files_to_sign)} file(s) to sign, "
            f"{len(plan.containers)} container(s), {len(plan.files_to_copy)} copy instruction(s)"
        )
        if plan.failed_containers:
            logger.warning(
                f"{len(plan.failed_containers)} container(s) could not be unpacked; "
                f"their nested files are not part of the plan"
            )
        return plan
