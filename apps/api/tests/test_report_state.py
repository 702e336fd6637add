import pytest

from models.report import Report
from services import report_state
from services.errors import IllegalTransition, ReportNotFound
from services.report_state import ReportStatus
from support import seed_user


async def _new_report(session_maker, report_id="report-1"):
    await seed_user(session_maker, "user-a")
    async with session_maker() as db:
        db.add(Report(id=report_id, user_id="user-a", requested_kinds=["paint"], status="PENDING", cost=49))
        await db.commit()
    return report_id


def test_allowed_transitions_table():
    assert report_state.can_transition(ReportStatus.PENDING, ReportStatus.PROCESSING)
    assert report_state.can_transition(ReportStatus.PENDING, ReportStatus.FAILED)
    assert report_state.can_transition(ReportStatus.PROCESSING, ReportStatus.COMPLETED)
    assert not report_state.can_transition(ReportStatus.PENDING, ReportStatus.COMPLETED)
    assert not report_state.can_transition(ReportStatus.COMPLETED, ReportStatus.FAILED)
    assert not report_state.can_transition(ReportStatus.FAILED, ReportStatus.PROCESSING)


@pytest.mark.asyncio
async def test_happy_path_records_timestamps_and_result(session_maker):
    report_id = await _new_report(session_maker)

    async with session_maker() as db:
        await report_state.transition(db, report_id, ReportStatus.PROCESSING)
        await report_state.transition(db, report_id, ReportStatus.COMPLETED, result={"score": {"score": 95}})

    async with session_maker() as db:
        report = await db.get(Report, report_id)
        assert report.status == "COMPLETED"
        assert report.started_at is not None
        assert report.completed_at is not None
        assert report.result_json == {"score": {"score": 95}}
        assert report.notes is None


@pytest.mark.asyncio
async def test_terminal_status_never_changes(session_maker):
    report_id = await _new_report(session_maker)

    async with session_maker() as db:
        await report_state.transition(db, report_id, ReportStatus.FAILED, notes="Analysis failed.")
        with pytest.raises(IllegalTransition) as exc_info:
            await report_state.transition(db, report_id, ReportStatus.PROCESSING)
        assert exc_info.value.details["current_status"] == "FAILED"
        with pytest.raises(IllegalTransition):
            await report_state.transition(db, report_id, ReportStatus.FAILED, notes="again")

    async with session_maker() as db:
        assert await report_state.get_status(report_id, db) == ReportStatus.FAILED


@pytest.mark.asyncio
async def test_pending_cannot_complete_directly(session_maker):
    report_id = await _new_report(session_maker)
    async with session_maker() as db:
        with pytest.raises(IllegalTransition):
            await report_state.transition(db, report_id, ReportStatus.COMPLETED, result={})


@pytest.mark.asyncio
async def test_notes_only_on_failed(session_maker):
    report_id = await _new_report(session_maker)
    async with session_maker() as db:
        with pytest.raises(ValueError):
            await report_state.transition(db, report_id, ReportStatus.FAILED)
        with pytest.raises(ValueError):
            await report_state.transition(db, report_id, ReportStatus.PROCESSING, notes="not allowed")


@pytest.mark.asyncio
async def test_unknown_report(session_maker):
    async with session_maker() as db:
        with pytest.raises(ReportNotFound):
            await report_state.transition(db, "missing", ReportStatus.PROCESSING)
        assert await report_state.get_status("missing", db) is None


@pytest.mark.asyncio
async def test_only_one_claim_wins(session_maker):
    report_id = await _new_report(session_maker)

    async with session_maker() as first, session_maker() as second:
        await report_state.transition(first, report_id, ReportStatus.PROCESSING)
        with pytest.raises(IllegalTransition):
            await report_state.transition(second, report_id, ReportStatus.PROCESSING)


@pytest.mark.asyncio
async def test_failure_notes_only_change_on_failed_reports(session_maker):
    report_id = await _new_report(session_maker)

    async with session_maker() as db:
        assert await report_state.update_failure_notes(db, report_id, "Refund pending") is False
        await report_state.transition(db, report_id, ReportStatus.FAILED, notes="Refund pending")
        assert await report_state.update_failure_notes(db, report_id, "Refunded") is True

    async with session_maker() as db:
        report = await db.get(Report, report_id)
        assert report.status == "FAILED"
        assert report.notes == "Refunded"
