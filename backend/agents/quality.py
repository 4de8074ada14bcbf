"""QA pass over a Handoff.

Generates one verification item per handoff task and runs the items through
a TaskGraphExecutor with a caller-supplied verifier. The overall verdict is
FAILURE if any item failed, PARTIAL if none failed but some were skipped,
and SUCCESS otherwise.
"""

from collections.abc import Callable
from typing import Any

import structlog

from agents.task_graph import TaskContext, TaskGraphExecutor
from agents.utils import maybe_await
from events.bus import EventBus
from events.types import EventType, WorkflowEvent
from models.schemas import (
    Handoff,
    MissionTask,
    OverallStatus,
    QAItemResult,
    QAPlan,
    QAPlanItem,
    QAReport,
    QAStatus,
    TaskOutput,
    VerifierReport,
)

logger = structlog.get_logger()

Verifier = Callable[[QAPlanItem], Any]

HANDOFF_EXCERPT_CHARS = 2000


def build_qa_plan(handoff: Handoff) -> QAPlan:
    """One ``qa-<task id>`` item per handoff task, in handoff order."""
    items: list[QAPlanItem] = []
    for task in handoff.tasks:
        related_files = list(task.output.files_touched) if task.output else []
        artifact_keys = list(task.output.artifacts) if task.output else []
        focus_areas = list(dict.fromkeys(related_files + artifact_keys))

        mission = [
            f'Validate the deliverables produced by developer task "{task.title}" (mission: {task.mission}).'
        ]
        if focus_areas:
            mission.append(f"Focus on artifacts/files: {', '.join(focus_areas)}")
        mission.append(f"Reported status: {task.status.value.upper()}.")

        items.append(
            QAPlanItem(
                id=f"qa-{task.task_id}",
                title=f"{task.title} QA",
                mission=" ".join(mission),
                target_task_id=task.task_id,
                related_files=related_files,
                focus_areas=focus_areas,
            )
        )
    return QAPlan(feature_request=handoff.feature_request, run_id=handoff.run_id, items=items)


def resolve_overall_status(results: list[QAItemResult]) -> OverallStatus:
    if any(result.status == QAStatus.FAIL for result in results):
        return OverallStatus.FAILURE
    if any(result.status == QAStatus.SKIPPED for result in results):
        return OverallStatus.PARTIAL
    return OverallStatus.SUCCESS


def compose_summary(status: OverallStatus, results: list[QAItemResult]) -> str:
    if status == OverallStatus.FAILURE:
        count = sum(1 for r in results if r.status == QAStatus.FAIL)
        return f"FAILURE: {count} tester{'' if count == 1 else 's'} reported blocking issues."
    if status == OverallStatus.PARTIAL:
        count = sum(1 for r in results if r.status == QAStatus.SKIPPED)
        return f"PARTIAL: {count} tester{'' if count == 1 else 's'} skipped. Review findings before release."
    return "SUCCESS: All tests passed."


def render_quality_report(
    status: OverallStatus,
    summary: str,
    plan: QAPlan,
    results: list[QAItemResult],
    handoff: Handoff,
) -> str:
    lines = [
        "# Global Quality Report",
        "",
        f"**Overall Summary:** {summary}",
        f"**Status:** {status.value}",
        "",
        "## Development Context",
        f"- Feature Request: {handoff.feature_request}",
        f"- Run: {handoff.run_id}",
        "",
        "## Test Plan Overview",
    ]
    for item in plan.items:
        focus = ", ".join(item.focus_areas) if item.focus_areas else "general quality"
        lines.append(f"- {item.title} (focus: {focus})")
    lines.append("")

    lines.append("## Tester Findings")
    for result in results:
        lines.append(f"### {result.title}")
        lines.append(f"- Mission: {result.mission}")
        lines.append(f"- Status: {result.status.value.upper()}")
        lines.append(f"- Findings: {result.findings or 'No findings recorded.'}")
        if result.defects:
            lines.append("- Defects:")
            lines.extend(f"  - {defect}" for defect in result.defects)
        if result.evidence:
            lines.append(f"- Evidence: {result.evidence}")
        lines.append("")

    lines.append("## Aggregated Defects")
    defects = [
        defect
        for result in results
        if result.status == QAStatus.FAIL
        for defect in result.defects
    ]
    if defects:
        lines.extend(f"- {defect}" for defect in defects)
    else:
        lines.append("- None reported.")
    lines.append("")

    lines.append("## Handoff Summary")
    lines.append("```markdown")
    lines.append(handoff.handoff_document[:HANDOFF_EXCERPT_CHARS])
    lines.append("```")
    return "\n".join(lines)


async def run_qa_plan(
    plan: QAPlan,
    handoff: Handoff,
    verifier: Verifier,
    event_bus: EventBus | None = None,
    session_id: str = "default",
    max_parallel: int | None = None,
) -> QAReport:
    """Run every plan item through ``verifier`` and aggregate a QAReport.

    A verifier that raises (or returns an invalid report) fails its item,
    with the error recorded as the item's defect note.
    """
    reports: dict[str, VerifierReport] = {}

    def make_executor(item: QAPlanItem):
        async def verify(task: MissionTask, context: TaskContext) -> TaskOutput:
            context.token.raise_if_cancelled()
            try:
                raw = await maybe_await(verifier, item)
                report = raw if isinstance(raw, VerifierReport) else VerifierReport.model_validate(raw)
            except Exception as e:
                logger.warning("qa_verifier_failed", plan_item_id=item.id, error=str(e))
                report = VerifierReport(
                    status=QAStatus.FAIL,
                    findings="Verifier raised an error.",
                    defects=[f"{item.id}: {e}"],
                )
            reports[item.id] = report
            return TaskOutput(summary=f"{item.title}: {report.status.value}")

        return verify

    graph = TaskGraphExecutor(
        plan.feature_request,
        event_bus=event_bus,
        session_id=session_id,
        max_parallel=max_parallel,
    )
    for item in plan.items:
        graph.register_task(
            MissionTask(id=item.id, title=item.title, mission=item.mission, metadata={"target": item.target_task_id}),
            make_executor(item),
        )
    if plan.items:
        await graph.execute()

    results: list[QAItemResult] = []
    for item in plan.items:
        report = reports.get(item.id) or VerifierReport(
            status=QAStatus.FAIL, defects=[f"{item.id}: verification did not complete"]
        )
        results.append(
            QAItemResult(
                plan_item_id=item.id,
                title=item.title,
                mission=item.mission,
                status=report.status,
                findings=report.findings,
                defects=list(report.defects),
                evidence=report.evidence,
            )
        )

    status = resolve_overall_status(results)
    summary = compose_summary(status, results)
    report = QAReport(
        overall_status=status,
        summary=summary,
        feature_request=plan.feature_request,
        plan=plan,
        results=results,
        body=render_quality_report(status, summary, plan, results, handoff),
    )

    logger.info("qa_report_ready", run_id=handoff.run_id, overall_status=status.value, items=len(results))
    if event_bus is not None:
        await event_bus.publish(
            WorkflowEvent(
                type=EventType.QA_REPORT_READY,
                session_id=session_id,
                agent_id="quality",
                agent_role="QA",
                data={"overall_status": status.value, "summary": summary},
            )
        )
    return report
