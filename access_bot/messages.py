"""User facing wording for access reports, shared by commands and the web page."""

from __future__ import annotations

from .data.models import AccessReport, Outcome, ProvisionReport, SessionState

REASONS = {
    "already_verified": "You are already verified.",
    "invalid_claim": "That verification id is not valid.",
    "not_found": "That verification id is not on the list for this season.",
    "already_bound": "That verification id has already been used by another account.",
    "account_taken": "Your account is already verified with a different id this season.",
    "unknown_season": "That season does not exist.",
    "season_inactive": "That season is no longer open for verification.",
    "not_verified": "That member has not verified for this season.",
    "removed": "That member is no longer listed for this season.",
    "planning_error": "Verification succeeded, but access could not be planned. "
    "An administrator has been notified.",
    "observe_failed": "Discord could not be reached. Please try again later.",
}


def _summarise(results, lines: list[str]) -> None:
    applied = sum(1 for r in results if r.outcome == Outcome.APPLIED)
    skipped = sum(1 for r in results if r.outcome == Outcome.SKIPPED)
    failures = [r for r in results if r.outcome == Outcome.FAILED]
    lines.append(f"Applied {applied} change(s).")
    if skipped:
        lines.append(f"Skipped {skipped} change(s) (dry run).")
    if failures:
        lines.append(f"{len(failures)} change(s) failed:")
        lines.extend(f"- {r.op} ({r.reason})" for r in failures)


def format_report(report: AccessReport) -> str:
    """Render an :class:`AccessReport` as a short user facing message."""
    if report.reason in REASONS and not report.results:
        return REASONS[report.reason]
    if report.state != SessionState.VERIFIED and report.reason != "removed":
        return f"Verification failed: {report.reason or report.state.value}."
    if not report.results:
        return "Access is already up to date."
    lines: list[str] = []
    if report.reason == "removed":
        lines.append(REASONS["removed"])
    _summarise(report.results, lines)
    return "\n".join(lines)


def format_provision(report: ProvisionReport) -> str:
    if report.reason is not None:
        return REASONS.get(report.reason, f"Provisioning failed: {report.reason}.")
    lines = [f"Season `{report.season_id}`:"]
    _summarise(report.results, lines)
    return "\n".join(lines)
