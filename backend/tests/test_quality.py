"""Tests for agents/quality.py -- QA plans and the aggregate verdict."""

import asyncio

import pytest

from agents.quality import build_qa_plan, compose_summary, resolve_overall_status, run_qa_plan
from events.bus import EventBus
from events.types import EventType
from models.schemas import (
    Handoff,
    OverallStatus,
    QAItemResult,
    QAPlanItem,
    QAStatus,
    TaskOutput,
    TaskRecord,
    TaskStatus,
    VerifierReport,
)
from tests.conftest import collect_events


def _record(task_id: str, sequence: int, files: list[str] | None = None, **output_fields) -> TaskRecord:
    return TaskRecord(
        task_id=task_id,
        title=task_id.title(),
        mission=f"Build {task_id}",
        status=TaskStatus.COMPLETED,
        sequence=sequence,
        wave=0,
        output=TaskOutput(summary=f"{task_id} done", files_touched=files or [], **output_fields),
    )


@pytest.fixture()
def handoff() -> Handoff:
    return Handoff(
        run_id="run_test",
        feature_request="Checkout flow",
        tasks=[
            _record("api", 0, ["api/routes.py"], artifacts={"openapi": "spec file"}),
            _record("ui", 1, ["web/cart.tsx"]),
            _record("docs", 2),
        ],
        files_touched=["api/routes.py", "web/cart.tsx"],
        handoff_document="# Development Summary & Handoff\n\nbody",
    )


def _result(status: QAStatus) -> QAItemResult:
    return QAItemResult(plan_item_id="qa-x", title="X QA", mission="m", status=status)


# =========================================================================
# Plan generation
# =========================================================================


class TestBuildPlan:
    def test_one_item_per_task(self, handoff: Handoff) -> None:
        plan = build_qa_plan(handoff)
        assert [item.id for item in plan.items] == ["qa-api", "qa-ui", "qa-docs"]
        assert [item.target_task_id for item in plan.items] == ["api", "ui", "docs"]
        assert plan.feature_request == "Checkout flow"
        assert plan.run_id == "run_test"

    def test_item_fields(self, handoff: Handoff) -> None:
        item = build_qa_plan(handoff).items[0]
        assert item.title == "Api QA"
        assert item.related_files == ["api/routes.py"]
        assert item.focus_areas == ["api/routes.py", "openapi"]
        assert 'developer task "Api" (mission: Build api)' in item.mission
        assert "Focus on artifacts/files: api/routes.py, openapi" in item.mission
        assert item.mission.endswith("Reported status: COMPLETED.")

    def test_item_without_focus(self, handoff: Handoff) -> None:
        item = build_qa_plan(handoff).items[2]
        assert item.focus_areas == []
        assert "Focus on" not in item.mission


# =========================================================================
# Verdicts
# =========================================================================


class TestVerdict:
    @pytest.mark.parametrize(
        ("statuses", "expected"),
        [
            ([QAStatus.PASS, QAStatus.PASS], OverallStatus.SUCCESS),
            ([QAStatus.PASS, QAStatus.SKIPPED], OverallStatus.PARTIAL),
            ([QAStatus.SKIPPED, QAStatus.FAIL], OverallStatus.FAILURE),
            ([QAStatus.PASS, QAStatus.FAIL, QAStatus.PASS], OverallStatus.FAILURE),
            ([], OverallStatus.SUCCESS),
        ],
    )
    def test_resolve(self, statuses: list[QAStatus], expected: OverallStatus) -> None:
        assert resolve_overall_status([_result(s) for s in statuses]) == expected

    def test_summaries(self) -> None:
        fail_one = [_result(QAStatus.FAIL)]
        assert compose_summary(OverallStatus.FAILURE, fail_one) == (
            "FAILURE: 1 tester reported blocking issues."
        )
        skipped_two = [_result(QAStatus.SKIPPED), _result(QAStatus.SKIPPED)]
        assert compose_summary(OverallStatus.PARTIAL, skipped_two) == (
            "PARTIAL: 2 testers skipped. Review findings before release."
        )
        assert compose_summary(OverallStatus.SUCCESS, []) == "SUCCESS: All tests passed."


# =========================================================================
# Running a plan
# =========================================================================


class TestRunQaPlan:
    async def test_failure_aggregates_defects(self, handoff: Handoff) -> None:
        def verifier(item: QAPlanItem) -> dict:
            if item.target_task_id == "ui":
                return {"status": "fail", "findings": "Cart total wrong", "defects": ["total ignores tax"]}
            return {"status": "pass", "findings": "ok"}

        report = await run_qa_plan(build_qa_plan(handoff), handoff, verifier)

        assert report.overall_status == OverallStatus.FAILURE
        assert report.summary == "FAILURE: 1 tester reported blocking issues."
        assert [r.status for r in report.results] == [QAStatus.PASS, QAStatus.FAIL, QAStatus.PASS]
        assert "## Aggregated Defects\n- total ignores tax" in report.body
        assert report.body.startswith("# Global Quality Report")
        assert "**Status:** FAILURE" in report.body

    async def test_partial(self, handoff: Handoff) -> None:
        async def verifier(item: QAPlanItem) -> VerifierReport:
            await asyncio.sleep(0)
            status = QAStatus.SKIPPED if item.target_task_id == "docs" else QAStatus.PASS
            return VerifierReport(status=status)

        report = await run_qa_plan(build_qa_plan(handoff), handoff, verifier)
        assert report.overall_status == OverallStatus.PARTIAL
        assert "- None reported." in report.body
        assert "- Findings: No findings recorded." in report.body

    async def test_success(self, handoff: Handoff) -> None:
        report = await run_qa_plan(build_qa_plan(handoff), handoff, lambda item: {"status": "pass"})
        assert report.overall_status == OverallStatus.SUCCESS
        assert "- Api QA (focus: api/routes.py, openapi)" in report.body
        assert "- Docs QA (focus: general quality)" in report.body
        assert "# Development Summary & Handoff" in report.body

    async def test_raising_verifier_fails_its_item(self, handoff: Handoff) -> None:
        def verifier(item: QAPlanItem) -> dict:
            if item.target_task_id == "api":
                raise ConnectionError("sandbox unreachable")
            return {"status": "pass"}

        report = await run_qa_plan(build_qa_plan(handoff), handoff, verifier)
        failed = report.results[0]
        assert failed.status == QAStatus.FAIL
        assert failed.defects == ["qa-api: sandbox unreachable"]
        assert report.overall_status == OverallStatus.FAILURE

    async def test_invalid_report_fails_item(self, handoff: Handoff) -> None:
        report = await run_qa_plan(build_qa_plan(handoff), handoff, lambda item: {"status": "maybe"})
        assert all(r.status == QAStatus.FAIL for r in report.results)

    async def test_empty_plan(self) -> None:
        empty = Handoff(
            run_id="run_empty", feature_request="Nothing", tasks=[], files_touched=[], handoff_document=""
        )
        report = await run_qa_plan(build_qa_plan(empty), empty, lambda item: {"status": "pass"})
        assert report.overall_status == OverallStatus.SUCCESS
        assert report.results == []

    async def test_report_event(self, handoff: Handoff, event_bus: EventBus) -> None:
        await run_qa_plan(
            build_qa_plan(handoff), handoff, lambda item: {"status": "pass"}, event_bus=event_bus, session_id="proj"
        )
        events = collect_events(event_bus, "proj")
        assert events[-1].type == EventType.QA_REPORT_READY
        assert events[-1].data == {"overall_status": "SUCCESS", "summary": "SUCCESS: All tests passed."}
