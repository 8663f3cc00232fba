from datetime import timedelta

import pytest

from labforge.exceptions import LabNotFoundError
from labforge.logger import define_log_level
from labforge.schema import Difficulty, ExecutionStatus, Lab, LabStatus, LabTemplate, SetupStatus, SetupStep, utc_now

define_log_level(print_level="DEBUG", logfile_level="DEBUG", name="LabForge_Test_Service")


def _template(template_id: str) -> LabTemplate:
    return LabTemplate(
        id=template_id,
        name="Two Steps",
        description="Two step template",
        lab_type="python",
        base_image="python:3.12",
        difficulty=Difficulty.ADVANCED,
    )


@pytest.mark.asyncio
async def test_start_seeds_templates(lab_service):
    await lab_service.start(run_sweeper=False)

    templates = await lab_service.list_templates()
    assert len(templates) == 4
    assert [t.id for t in await lab_service.list_templates(lab_type="docker")] == ["docker-dev-template"]
    assert {t.id for t in await lab_service.list_templates(difficulty=Difficulty.INTERMEDIATE)} == {
        "docker-dev-template",
        "johndoe-user-template",
    }
    stats = lab_service.get_stats()
    assert stats["started"] is True
    assert stats["backend"] == "FakeOrchestrator"
    assert stats["sweeper_running"] is False


@pytest.mark.asyncio
async def test_template_lab_setup_succeeds(lab_service):
    await lab_service.start(seed_templates=False, run_sweeper=False)
    await lab_service.create_template(
        _template("ok-template"),
        [
            SetupStep(template_id="", step_order=1, title="First", setup_command="echo one"),
            SetupStep(template_id="", step_order=2, title="Second", setup_command="pwd", working_directory="/tmp"),
        ],
    )

    lab = await lab_service.create_from_template("alice", "ok-template")
    await lab_service.setup_pool.join()

    assert await lab_service.get_lab_status(lab.id) == LabStatus.RUNNING
    logs = await lab_service.get_setup_logs(lab.id)
    assert [log.status for log in logs] == [ExecutionStatus.SUCCESS, ExecutionStatus.SUCCESS]
    assert logs[1].output.strip() == "/tmp"
    progress = await lab_service.get_setup_progress(lab.id)
    assert progress["successful_steps"] == 2


@pytest.mark.asyncio
async def test_template_lab_setup_fails_and_stops(lab_service, fake_orchestrator):
    await lab_service.start(seed_templates=False, run_sweeper=False)
    await lab_service.create_template(
        _template("failing-template"),
        [
            SetupStep(template_id="", step_order=1, title="Ok", setup_command="true"),
            SetupStep(template_id="", step_order=2, title="Broken", setup_command="exit 1", retry_count=2),
            SetupStep(template_id="", step_order=3, title="Never", setup_command="echo never"),
        ],
    )

    lab = await lab_service.create_from_template("alice", "failing-template")
    await lab_service.setup_pool.join()

    stored = await lab_service.get_lab(lab.id)
    assert (stored.setup_status, stored.status) == (SetupStatus.FAILED, LabStatus.ERROR)
    logs = await lab_service.get_setup_logs(lab.id)
    assert len(logs) == 2
    assert logs[0].status == ExecutionStatus.SUCCESS
    assert (logs[1].status, logs[1].attempt_number, logs[1].exit_code) == (ExecutionStatus.FAILED, 2, 1)
    assert len(fake_orchestrator.sessions) == 3
    assert await lab_service.get_lab_status(lab.id) == LabStatus.ERROR


@pytest.mark.asyncio
async def test_adhoc_lab_end_to_end(lab_service, fake_orchestrator):
    await lab_service.start(seed_templates=False, run_sweeper=False)

    lab = await lab_service.create_adhoc_lab("bob", "nodejs", 120)
    assert await lab_service.get_lab_status(lab.id) == LabStatus.RUNNING
    assert [l.id for l in await lab_service.list_labs_by_owner("bob")] == [lab.id]

    result = await lab_service.execute_adhoc_command(lab.id, "echo out; echo err >&2; exit 4")
    assert (result.output, result.error, result.exit_code, result.success) == ("out\n", "err\n", 4, False)

    await lab_service.delete_lab(lab.id)
    with pytest.raises(LabNotFoundError):
        await lab_service.get_setup_logs(lab.id)


@pytest.mark.asyncio
async def test_expiry_sweep_via_service(lab_service, store, fake_orchestrator):
    await lab_service.start(seed_templates=False, run_sweeper=False)
    lab = await lab_service.create_adhoc_lab("carol", "python", 60)
    assert await lab_service.get_lab_status(lab.id) == LabStatus.RUNNING

    lab = await store.get_lab(lab.id)
    lab.expires_at = utc_now() - timedelta(seconds=1)
    await store.save_lab(lab)

    assert await lab_service.run_expiry_sweep() == [lab.id]
    assert fake_orchestrator.terminated == [lab.workload_name]
    assert (await lab_service.get_lab(lab.id)).status == LabStatus.EXPIRED


@pytest.mark.asyncio
async def test_stop_closes_orchestrator(lab_service, fake_orchestrator):
    async with lab_service:
        assert lab_service.sweeper.is_running
    assert fake_orchestrator.closed is True
    assert lab_service.get_stats()["is_shutting_down"] is True


@pytest.mark.asyncio
async def test_start_fails_setups_left_from_previous_run(lab_service, store):
    interrupted = Lab(
        id="lab-interrupted",
        owner_id="dave",
        template_id="python-dev-template",
        lab_type="python",
        setup_status=SetupStatus.SETTING_UP,
        expires_at=utc_now() + timedelta(hours=1),
        workload_name="lab-interrupted",
        duration_seconds=3600,
    )
    await store.save_lab(interrupted)

    await lab_service.start(seed_templates=False, run_sweeper=False)

    lab = await lab_service.get_lab("lab-interrupted")
    assert (lab.setup_status, lab.status) == (SetupStatus.FAILED, LabStatus.ERROR)
