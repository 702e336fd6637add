import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from config import settings
from models.credit_transaction import CreditTransaction
from models.report import Report
from multimodal.adapter import AnalysisAdapter
from multimodal.models import AnalysisKind
from services import analysis, credits, report_state
from services.analysis_queue import recover_stalled_reports
from services.errors import (
    AssetMissing,
    BadRequest,
    IllegalTransition,
    IncompleteAIResponse,
    InsufficientFunds,
    InvalidAsset,
    NotReportOwner,
    ProviderUnavailable,
)
from services.report_state import ReportStatus
from support import (
    JPEG_BYTES,
    VEHICLE,
    FakeProvider,
    Hang,
    balance_of,
    create_report,
    damage_payload,
    seed_user,
    transient,
    valid_payload,
)

PAINT = AnalysisKind.PAINT
DAMAGE = AnalysisKind.DAMAGE
AUDIO = AnalysisKind.AUDIO
VALUE = AnalysisKind.VALUE


def _adapter(overrides=None):
    providers = {
        PAINT: [FakeProvider("vision", [PAINT])],
        DAMAGE: [FakeProvider("vision", [DAMAGE])],
        AUDIO: [FakeProvider("audio", [AUDIO])],
        VALUE: [FakeProvider("vision", [VALUE])],
    }
    providers.update(overrides or {})
    return AnalysisAdapter(providers, sleep=lambda seconds: asyncio.sleep(0))


async def _report(session_maker, report_id):
    async with session_maker() as db:
        return await db.get(Report, report_id)


async def _ledger_count(session_maker, report_id, transaction_type):
    async with session_maker() as db:
        result = await db.execute(
            select(func.count(CreditTransaction.id)).where(
                CreditTransaction.reference_id == report_id,
                CreditTransaction.transaction_type == transaction_type,
            )
        )
        return result.scalar()


async def _run(session_maker, storage, report_id, adapter, user_id="user-a"):
    async with session_maker() as db:
        return await analysis.run_analysis(
            report_id,
            user_id,
            db,
            adapter=adapter,
            storage=storage,
            session_maker=session_maker,
        )


@pytest.mark.asyncio
async def test_successful_damage_analysis_charges_once(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["damage"], images=2)
    damage = FakeProvider("vision", [DAMAGE], [damage_payload("medium"), damage_payload("low")])

    report = await _run(session_maker, storage, report_id, _adapter({DAMAGE: [damage]}))

    assert report.status == "COMPLETED"
    assert report.completed_at is not None
    assert await balance_of(session_maker, "user-a") == Decimal("131.00")
    assert await _ledger_count(session_maker, report_id, "USAGE") == 1
    assert await _ledger_count(session_maker, report_id, "REFUND") == 0

    section = report.result_json["sections"]["damage"]
    positions = {asset.id: asset.position for asset in report.assets}
    assert [positions[a["asset_id"]] for a in section["assets"]] == [0, 1]
    assert report.result_json["score"]["score"] == 65
    assert len(damage.calls) == 2


@pytest.mark.asyncio
async def test_provider_outage_refunds_and_fails_report(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["damage"])
    down = FakeProvider("vision", [DAMAGE], [transient()] * 3)

    with pytest.raises(ProviderUnavailable):
        await _run(session_maker, storage, report_id, _adapter({DAMAGE: [down]}))

    report = await _report(session_maker, report_id)
    assert report.status == "FAILED"
    assert "69 credits were refunded" in report.notes
    assert report.result_json is None
    assert await balance_of(session_maker, "user-a") == Decimal("200.00")
    assert await _ledger_count(session_maker, report_id, "REFUND") == 1


@pytest.mark.asyncio
async def test_insufficient_funds_keeps_report_pending(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=40)
    report_id = await create_report(session_maker, storage, "user-a", ["damage"])
    damage = FakeProvider("vision", [DAMAGE])

    with pytest.raises(InsufficientFunds):
        await _run(session_maker, storage, report_id, _adapter({DAMAGE: [damage]}))

    assert (await _report(session_maker, report_id)).status == "PENDING"
    assert await balance_of(session_maker, "user-a") == Decimal("40.00")
    assert await _ledger_count(session_maker, report_id, "USAGE") == 0
    assert damage.calls == []


@pytest.mark.asyncio
async def test_second_run_of_completed_report_is_rejected(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["paint"])
    adapter = _adapter()

    await _run(session_maker, storage, report_id, adapter)
    with pytest.raises(IllegalTransition):
        await _run(session_maker, storage, report_id, adapter)

    assert await balance_of(session_maker, "user-a") == Decimal("151.00")
    assert (await _report(session_maker, report_id)).status == "COMPLETED"


@pytest.mark.asyncio
async def test_concurrent_starts_reserve_credits_once(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["paint"])

    async def _begin():
        async with session_maker() as db:
            return await analysis.begin_analysis(report_id, "user-a", db, session_maker=session_maker)

    outcomes = await asyncio.gather(_begin(), _begin(), return_exceptions=True)

    reservations = [o for o in outcomes if isinstance(o, analysis.Reservation)]
    rejected = [o for o in outcomes if isinstance(o, IllegalTransition)]
    assert len(reservations) == 1
    assert len(rejected) == 1
    assert (await _report(session_maker, report_id)).status == "PROCESSING"
    assert await balance_of(session_maker, "user-a") == Decimal("151.00")


@pytest.mark.asyncio
async def test_missing_inputs_are_rejected_before_charging(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    audio_report = await create_report(session_maker, storage, "user-a", ["audio"], images=1)
    value_report = await create_report(session_maker, storage, "user-a", ["value"], images=1)

    with pytest.raises(AssetMissing) as exc_info:
        await _run(session_maker, storage, audio_report, _adapter())
    assert exc_info.value.details["missing"] == ["audio"]

    with pytest.raises(AssetMissing) as exc_info:
        await _run(session_maker, storage, value_report, _adapter())
    assert exc_info.value.details["missing"] == ["vehicle_info"]

    assert await balance_of(session_maker, "user-a") == Decimal("200.00")
    assert (await _report(session_maker, audio_report)).status == "PENDING"


@pytest.mark.asyncio
async def test_full_expertise_without_audio_skips_engine_section(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=300)
    report_id = await create_report(session_maker, storage, "user-a", ["full"], images=2, vehicle_info=VEHICLE)
    value = FakeProvider("vision", [VALUE])
    audio = FakeProvider("audio", [AUDIO])

    report = await _run(session_maker, storage, report_id, _adapter({VALUE: [value], AUDIO: [audio]}))

    sections = report.result_json["sections"]
    assert report.status == "COMPLETED"
    assert report.result_json["mode"] == "full"
    assert sections["audio"]["status"] == "skipped"
    assert sections["paint"]["status"] == "completed"
    assert len(sections["paint"]["assets"]) == 2
    assert sections["value"]["status"] == "completed"
    assert len(value.calls) == 1
    assert audio.calls == []
    assert await balance_of(session_maker, "user-a") == Decimal("121.00")


@pytest.mark.asyncio
async def test_full_expertise_tolerates_value_outage(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=300)
    report_id = await create_report(
        session_maker, storage, "user-a", ["full"], images=1, audio=1, vehicle_info=VEHICLE
    )
    value = FakeProvider("vision", [VALUE], [transient()] * 3)

    report = await _run(session_maker, storage, report_id, _adapter({VALUE: [value]}))

    sections = report.result_json["sections"]
    assert report.status == "COMPLETED"
    assert sections["value"]["status"] == "unavailable"
    assert sections["audio"]["status"] == "completed"
    assert await balance_of(session_maker, "user-a") == Decimal("121.00")


@pytest.mark.asyncio
async def test_malformed_required_section_fails_full_expertise(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=300)
    report_id = await create_report(session_maker, storage, "user-a", ["full"], images=1, vehicle_info=VEHICLE)
    broken = valid_payload(DAMAGE)
    broken.pop("overall_assessment")
    damage = FakeProvider("vision", [DAMAGE], [broken])

    with pytest.raises(IncompleteAIResponse):
        await _run(session_maker, storage, report_id, _adapter({DAMAGE: [damage]}))

    report = await _report(session_maker, report_id)
    assert report.status == "FAILED"
    assert "179 credits were refunded" in report.notes
    assert await balance_of(session_maker, "user-a") == Decimal("300.00")


@pytest.mark.asyncio
async def test_hard_timeout_compensates(session_maker, storage, monkeypatch):
    monkeypatch.setattr(settings, "ANALYSIS_HARD_TIMEOUT_SECONDS", 0.05)
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["paint"])
    slow = FakeProvider("vision", [PAINT], [Hang(2.0)], timeout_seconds=5.0)

    with pytest.raises(ProviderUnavailable):
        await _run(session_maker, storage, report_id, _adapter({PAINT: [slow]}))

    assert (await _report(session_maker, report_id)).status == "FAILED"
    assert await balance_of(session_maker, "user-a") == Decimal("200.00")


@pytest.mark.asyncio
async def test_cancelled_run_is_compensated(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["paint"])
    slow = FakeProvider("vision", [PAINT], [Hang(5.0)], timeout_seconds=10.0)

    task = asyncio.create_task(_run(session_maker, storage, report_id, _adapter({PAINT: [slow]})))
    for _ in range(100):
        if slow.calls:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    report = await _report(session_maker, report_id)
    assert report.status == "FAILED"
    assert "interrupted" in report.notes
    assert await balance_of(session_maker, "user-a") == Decimal("200.00")


@pytest.mark.asyncio
async def test_stalled_processing_reports_are_recovered(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["damage"])
    async with session_maker() as db:
        await analysis.begin_analysis(report_id, "user-a", db, session_maker=session_maker)
        await db.execute(
            update(Report)
            .where(Report.id == report_id)
            .values(started_at=datetime.now(timezone.utc) - timedelta(hours=2))
        )
        await db.commit()

    recovered = await recover_stalled_reports(30, session_maker=session_maker)

    assert recovered == 1
    assert (await _report(session_maker, report_id)).status == "FAILED"
    assert await balance_of(session_maker, "user-a") == Decimal("200.00")
    assert await recover_stalled_reports(30, session_maker=session_maker) == 0


@pytest.mark.asyncio
async def test_fresh_processing_reports_are_not_recovered(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["damage"])
    async with session_maker() as db:
        await analysis.begin_analysis(report_id, "user-a", db, session_maker=session_maker)

    assert await recover_stalled_reports(30, session_maker=session_maker) == 0
    assert (await _report(session_maker, report_id)).status == "PROCESSING"


@pytest.mark.asyncio
async def test_interrupted_start_refunds_the_debit(session_maker, storage, monkeypatch):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["damage"])
    real_transition = report_state.transition

    async def _cancelled_before_processing(db, target_id, target, **kwargs):
        if target == ReportStatus.PROCESSING:
            raise asyncio.CancelledError()
        return await real_transition(db, target_id, target, **kwargs)

    monkeypatch.setattr(report_state, "transition", _cancelled_before_processing)

    async with session_maker() as db:
        with pytest.raises(asyncio.CancelledError):
            await analysis.begin_analysis(report_id, "user-a", db, session_maker=session_maker)

    report = await _report(session_maker, report_id)
    assert report.status == "FAILED"
    assert "interrupted" in report.notes
    assert await balance_of(session_maker, "user-a") == Decimal("200.00")


@pytest.mark.asyncio
async def test_debited_pending_reports_are_recovered(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["damage"])
    async with session_maker() as db:
        report = await analysis.load_report(report_id, db)
        # Debit committed, then the process died before PROCESSING.
        await credits.debit("user-a", report.cost, report_id, db)

    assert await recover_stalled_reports(30, session_maker=session_maker) == 0

    async with session_maker() as db:
        await db.execute(
            update(CreditTransaction)
            .where(CreditTransaction.reference_id == report_id)
            .values(created_at=datetime.now(timezone.utc) - timedelta(hours=2))
        )
        await db.commit()

    assert await recover_stalled_reports(30, session_maker=session_maker) == 1
    report = await _report(session_maker, report_id)
    assert report.status == "FAILED"
    assert "69 credits were refunded" in report.notes
    assert await balance_of(session_maker, "user-a") == Decimal("200.00")
    assert await recover_stalled_reports(30, session_maker=session_maker) == 0


@pytest.mark.asyncio
async def test_undebited_pending_reports_are_not_recovered(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["damage"])
    async with session_maker() as db:
        await db.execute(
            update(Report)
            .where(Report.id == report_id)
            .values(created_at=datetime.now(timezone.utc) - timedelta(hours=2))
        )
        await db.commit()

    assert await recover_stalled_reports(30, session_maker=session_maker) == 0
    assert (await _report(session_maker, report_id)).status == "PENDING"


@pytest.mark.asyncio
async def test_upload_validation(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    await seed_user(session_maker, "user-b")
    report_id = await create_report(session_maker, storage, "user-a", ["paint"], images=0)

    async with session_maker() as db:
        with pytest.raises(InvalidAsset):
            await analysis.add_asset(
                report_id, "user-a", asset_kind="image", filename="notes.txt", data=b"hello", db=db, storage=storage
            )
        with pytest.raises(InvalidAsset):
            await analysis.add_asset(
                report_id, "user-a", asset_kind="image", filename="car.jpg", data=b"", db=db, storage=storage
            )
        with pytest.raises(InvalidAsset):
            await analysis.add_asset(
                report_id, "user-a", asset_kind="video", filename="car.mp4", data=b"x", db=db, storage=storage
            )
        with pytest.raises(NotReportOwner):
            await analysis.add_asset(
                report_id, "user-b", asset_kind="image", filename="car.jpg", data=JPEG_BYTES, db=db, storage=storage
            )
        with pytest.raises(InvalidAsset):
            await analysis.add_asset(
                report_id,
                "user-a",
                asset_kind="image",
                filename="setup.exe",
                data=b"MZ" + JPEG_BYTES,
                mime_type="image/jpeg",
                db=db,
                storage=storage,
            )
        with pytest.raises(InvalidAsset):
            await analysis.add_asset(
                report_id,
                "user-a",
                asset_kind="image",
                filename="car.jpg",
                data=JPEG_BYTES,
                mime_type="application/x-msdownload",
                db=db,
                storage=storage,
            )
        accepted = await analysis.add_asset(
            report_id,
            "user-a",
            asset_kind="image",
            filename="car.jpg",
            data=JPEG_BYTES,
            mime_type="application/octet-stream",
            db=db,
            storage=storage,
        )
        assert accepted.position == 0


@pytest.mark.asyncio
async def test_image_count_limit(session_maker, storage, monkeypatch):
    monkeypatch.setattr(settings, "MAX_IMAGES_PER_REPORT", 2)
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["paint"], images=2)

    async with session_maker() as db:
        with pytest.raises(InvalidAsset):
            await analysis.add_asset(
                report_id, "user-a", asset_kind="image", filename="car.jpg", data=JPEG_BYTES, db=db, storage=storage
            )


@pytest.mark.asyncio
async def test_uploads_close_once_analysis_starts(session_maker, storage):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["paint"])
    await _run(session_maker, storage, report_id, _adapter())

    async with session_maker() as db:
        with pytest.raises(IllegalTransition):
            await analysis.add_asset(
                report_id, "user-a", asset_kind="image", filename="late.jpg", data=JPEG_BYTES, db=db, storage=storage
            )


@pytest.mark.parametrize("kinds", [[], ["paint", "full"], ["wheels"]])
def test_requested_kinds_are_validated(kinds):
    with pytest.raises(BadRequest):
        analysis.parse_requested_kinds(kinds)


def test_requested_kinds_are_deduplicated():
    assert analysis.parse_requested_kinds(["Paint", "paint", "damage"]) == [PAINT, DAMAGE]


@pytest.mark.asyncio
async def test_report_price_is_fixed_at_creation(session_maker, storage, monkeypatch):
    await seed_user(session_maker, "user-a", balance=200)
    report_id = await create_report(session_maker, storage, "user-a", ["paint", "value"], vehicle_info=VEHICLE)
    monkeypatch.setattr(settings, "CREDIT_COST_PAINT", 500)

    await _run(session_maker, storage, report_id, _adapter())

    assert (await _report(session_maker, report_id)).cost == Decimal("98.00")
    assert await balance_of(session_maker, "user-a") == Decimal("102.00")
