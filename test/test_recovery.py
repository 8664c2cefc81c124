import asyncio

import pytest

from species_gallery.domain.enums import GenerationStatus
from species_gallery.services.recovery import RecoverySweeper, infer_settled_status
from species_gallery.workers.recovery_worker import RecoveryScheduler

from conftest import minutes_ago


@pytest.mark.asyncio
async def test_error_with_media_becomes_completed(db, sweeper):
    """Errored species that already have media are settled as completed"""
    legacy = db.add_species(generation_status="error", storage_image_url="https://blob/images/a.png")["id"]
    versioned = db.add_species(generation_status="error", total_video_versions=2)["id"]

    result = await sweeper.fix_error_statuses()

    assert result.success is True
    assert result.fixed == 2
    assert result.message == "Auto-recovery completed: 2 fixed, 0 retried"
    assert db.species[legacy]["generation_status"] == "completed"
    assert db.species[versioned]["generation_status"] == "completed"


@pytest.mark.asyncio
async def test_error_with_ledger_media_only(db, media_repo, sweeper):
    """Media rows in species_media count even when the species columns are empty"""
    sid = db.add_species(generation_status="error", updated_at=minutes_ago(1))["id"]
    db.media.append({"species_id": sid, "media_type": "image", "version_number": 1, "storage_url": "https://blob/x.png"})

    result = await sweeper.fix_error_statuses()

    assert result.fixed == 1
    assert db.species[sid]["generation_status"] == "completed"


@pytest.mark.asyncio
async def test_error_grace_window(db, sweeper):
    """Old errors without media retry as pending; recent ones are left alone"""
    old = db.add_species(generation_status="error", updated_at=minutes_ago(10))["id"]
    recent = db.add_species(generation_status="error", updated_at=minutes_ago(1))["id"]

    result = await sweeper.fix_error_statuses()

    assert (result.fixed, result.retried) == (0, 1)
    assert db.species[old]["generation_status"] == "pending"
    assert db.species[recent]["generation_status"] == "error"


@pytest.mark.asyncio
async def test_fix_errors_throttled_and_idempotent(db, sweeper, clock):
    """Back-to-back runs are refused; a later run finds nothing new to change"""
    db.add_species(generation_status="error", image_url="https://replicate.delivery/a.png")

    first = await sweeper.fix_error_statuses()
    assert first.fixed == 1

    too_soon = await sweeper.fix_error_statuses()
    assert too_soon.success is False
    assert too_soon.errors == ["Too frequent recovery attempts"]
    assert too_soon.message == "Please wait before retrying"

    clock.advance(31)
    again = await sweeper.fix_error_statuses()
    assert again.success is True
    assert again.fixed == 0
    assert again.message == "No species with error status found"


@pytest.mark.asyncio
async def test_overlapping_run_is_refused(db, species_repo, media_repo, events, clock):
    """A second call while the first is still running does nothing"""
    release = asyncio.Event()

    class SlowRepo(type(species_repo)):
        async def list_by_status(self, statuses):
            await release.wait()
            return await super().list_by_status(statuses)

    sweeper = RecoverySweeper(
        species_repo=SlowRepo(db),
        media_repo=media_repo,
        events=events,
        error_grace_seconds=120,
        stuck_seconds=600,
        min_interval_seconds=0,
        monotonic=clock,
    )
    first = asyncio.create_task(sweeper.fix_error_statuses())
    await asyncio.sleep(0)

    second = await sweeper.fix_error_statuses()
    release.set()
    await first

    assert second.success is False
    assert second.message == "Recovery already running"


@pytest.mark.asyncio
async def test_stuck_generations_reset_to_inferred_status(db, sweeper, events):
    """Stuck rows go to completed, image_generated or pending based on stored media"""
    with_video = db.add_species(generation_status="generating_video", video_url="v", updated_at=minutes_ago(30))["id"]
    with_image = db.add_species(generation_status="generating_video", image_url="i", updated_at=minutes_ago(30))["id"]
    nothing = db.add_species(generation_status="generating_image", updated_at=minutes_ago(30))["id"]
    fresh = db.add_species(generation_status="generating_image", updated_at=minutes_ago(2))["id"]
    q = events.connect()

    result = await sweeper.reset_stuck_generations()

    assert result.success is True
    assert result.message == "Reset 3 stuck generations"
    assert db.species[with_video]["generation_status"] == "completed"
    assert db.species[with_image]["generation_status"] == "image_generated"
    assert db.species[nothing]["generation_status"] == "pending"
    assert db.species[fresh]["generation_status"] == "generating_image"
    assert q.qsize() == 3

    second = await sweeper.reset_stuck_generations()
    assert second.message == "No stuck generations found"


@pytest.mark.asyncio
async def test_find_stuck_reports_minutes(db, sweeper):
    """Stuck listing carries how long each species has been generating"""
    sid = db.add_species(generation_status="generating_image", updated_at=minutes_ago(45))["id"]

    stuck = await sweeper.find_stuck()

    assert [s["id"] for s in stuck] == [sid]
    assert stuck[0]["stuck_minutes"] in (44, 45)
    assert stuck[0]["generation_status"] == "generating_image"


@pytest.mark.asyncio
async def test_comprehensive_merges_results(db, sweeper):
    """Combined run reports both passes"""
    db.add_species(generation_status="error", image_url="i")
    db.add_species(generation_status="generating_image", updated_at=minutes_ago(30))

    result = await sweeper.run_comprehensive()

    assert result.success is True
    assert result.fixed == 2
    assert len(result.details) == 2


def test_infer_settled_status():
    assert infer_settled_status({"current_video_url": "v"}) == GenerationStatus.completed
    assert infer_settled_status({"total_image_versions": 1}) == GenerationStatus.image_generated
    assert infer_settled_status({}) == GenerationStatus.pending


@pytest.mark.asyncio
async def test_scheduler_run_once_and_start_stop(sweeper):
    """Scheduler with a zero interval never starts; run_once sweeps immediately"""
    disabled = RecoveryScheduler(sweeper, interval_seconds=0)
    disabled.start()
    assert disabled.running is False

    result = await disabled.run_once()
    assert result.success is True
    assert disabled.runs == 1

    scheduler = RecoveryScheduler(sweeper, interval_seconds=3600)
    scheduler.start()
    assert scheduler.running is True
    await scheduler.stop()
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_zero_grace_is_not_replaced_by_setting(db, species_repo, media_repo, events, clock):
    """error_grace_seconds=0 retries every media-less error immediately"""
    sweeper = RecoverySweeper(
        species_repo=species_repo,
        media_repo=media_repo,
        events=events,
        error_grace_seconds=0,
        stuck_seconds=600,
        min_interval_seconds=0,
        monotonic=clock,
    )
    sid = db.add_species(generation_status="error", updated_at=minutes_ago(0.5))["id"]

    result = await sweeper.fix_error_statuses()

    assert sweeper.error_grace.total_seconds() == 0
    assert result.retried == 1
    assert db.species[sid]["generation_status"] == "pending"
