"""
Tests for jobrunner.service
"""

import threading
from datetime import timedelta

import pytest

from jobrunner.exceptions import (
    ForbiddenContentError, InvalidExpression, PersistenceError, ValidationError,
)
from jobrunner.models import JobStatus, RunStatus, Script, ScriptKind, utcnow
from tests.conftest import run_in_thread, wait_for


def test_schedule_is_idempotent(service, make_job):
    job = make_job(schedule="*/5 * * * *")

    assert service.schedule(job) is True
    assert service.schedule(job) is False

    assert [j.id for j in service.scheduler.get_jobs()] == [f"job-{job.id}"]
    assert service.registry.scheduled_ids() == [job.id]


def test_schedule_rejects_invalid_expression(service, make_job):
    job = make_job(schedule="not a cron")

    with pytest.raises(InvalidExpression):
        service.schedule(job)

    assert service.scheduler.get_jobs() == []
    assert not service.registry.has_schedule(job.id)


def test_cancel_unscheduled_job(service):
    assert service.cancel(999) is False


def test_cancel_removes_trigger(service, make_job):
    job = make_job()
    service.schedule(job)

    assert service.cancel(job.id) is True

    assert service.scheduler.get_jobs() == []
    assert service.cancel(job.id) is False


def test_cancel_terminates_running_process(service, make_job, run_store):
    job = make_job(command="echo started; sleep 30")
    service.schedule(job)

    thread, holder = run_in_thread(service.coordinator.run_now, job)
    assert wait_for(lambda: service.registry.running_count(job.id) == 1)

    service.cancel(job.id)
    thread.join(timeout=15)

    assert not thread.is_alive()
    outcome = holder['result']
    assert outcome.status == RunStatus.ERROR
    run = run_store.get_run(outcome.run_id)
    assert run.status == RunStatus.ERROR
    assert "[terminated: job was cancelled]" in run.output
    assert service.registry.running_count(job.id) == 0


def test_fire_runs_active_job(service, make_job, run_store):
    job = make_job(command="echo fired")
    service.schedule(job)

    service._fire(job.id)

    runs = run_store.list_runs(job.id)
    assert len(runs) == 1
    assert runs[0].status == RunStatus.SUCCESS
    assert runs[0].output == "fired"


def test_fire_skips_paused_job(service, make_job, job_store, run_store):
    job = make_job()
    service.schedule(job)
    job_store.update_status(job.id, JobStatus.PAUSED)

    service._fire(job.id)

    assert run_store.list_runs(job.id) == []


def test_fire_skips_deleted_job(service, make_job, job_store, run_store):
    job = make_job()
    service.schedule(job)
    job_store.delete(job.id)

    service._fire(job.id)

    assert run_store.list_runs(job.id) == []


def test_stray_trigger_after_cancel_is_ignored(service, make_job, run_store):
    job = make_job()
    service.schedule(job)
    service.cancel(job.id)

    service._fire(job.id)

    assert run_store.list_runs(job.id) == []


def test_initialize_schedules_active_jobs(service, make_job):
    active = [make_job(name="a"), make_job(name="b")]
    make_job(name="c", status=JobStatus.PAUSED)
    broken = make_job(name="d", schedule="61 * * * *")

    counts = service.initialize()

    assert counts == {'loaded': 2, 'skipped': 1, 'failed': 1}
    assert sorted(service.registry.scheduled_ids()) == sorted(j.id for j in active)
    assert not service.registry.has_schedule(broken.id)


def test_initialize_with_no_jobs(service):
    assert service.initialize() == {'loaded': 0, 'skipped': 0, 'failed': 0}
    assert service.scheduler.get_jobs() == []


def test_submit_job_stores_and_schedules(service, job_store):
    job = service.submit_job(owner=7, name=" nightly ", schedule="0 3 * * *",
                             command="echo nightly")

    stored = job_store.get_job(job.id)
    assert stored.name == "nightly"
    assert stored.owner == 7
    assert stored.status == JobStatus.ACTIVE
    assert service.registry.has_schedule(job.id)


def test_submit_forbidden_command(service, job_store):
    with pytest.raises(ForbiddenContentError):
        service.submit_job(owner=1, name="bad", schedule="* * * * *", command="sudo ls")

    assert job_store.list_jobs() == []
    assert service.scheduler.get_jobs() == []


@pytest.mark.parametrize("kwargs", [
    {'command': "echo a", 'script_id': 1},
    {},
    {'command': "   "},
    {'command': "x" * 2001},
])
def test_submit_invalid_payload(service, job_store, kwargs):
    with pytest.raises(ValidationError):
        service.submit_job(owner=1, name="bad", schedule="* * * * *", **kwargs)

    assert job_store.list_jobs() == []


def test_submit_invalid_cron(service, job_store):
    with pytest.raises(InvalidExpression):
        service.submit_job(owner=1, name="bad", schedule="* * *", command="echo a")

    assert job_store.list_jobs() == []


def test_submit_script_job(service, script_store):
    script = script_store.create_script(Script(id=None, owner=3, name="s", content="echo hi"))

    job = service.submit_job(owner=3, name="scripted", schedule="*/10 * * * *",
                             script_id=script.id)

    assert job.script_id == script.id
    with pytest.raises(ValidationError):
        service.submit_job(owner=4, name="other owner", schedule="* * * * *",
                           script_id=script.id)


def test_submit_forbidden_node_script(service, script_store):
    script = script_store.create_script(Script(
        id=None, owner=3, name="s", kind=ScriptKind.NODE,
        content="require('child_process').execSync('sudo reboot')"
    ))

    with pytest.raises(ForbiddenContentError):
        service.submit_job(owner=3, name="bad", schedule="* * * * *", script_id=script.id)


def test_pause_leaves_running_process_alive(service, make_job, run_store, job_store):
    job = make_job(command="sleep 1; echo survived")
    service.schedule(job)

    thread, holder = run_in_thread(service.coordinator.run_now, job)
    assert wait_for(lambda: service.registry.running_count(job.id) == 1)

    assert service.pause_job(job.id) is True
    assert not service.registry.has_schedule(job.id)
    assert job_store.get_job(job.id).is_paused

    thread.join(timeout=15)
    run = run_store.get_run(holder['result'].run_id)
    assert run.status == RunStatus.SUCCESS
    assert "survived" in run.output


def test_resume_reschedules(service, make_job):
    job = make_job()
    service.schedule(job)
    service.pause_job(job.id)

    assert service.resume_job(job.id) is True
    assert service.registry.has_schedule(job.id)
    # Resuming twice keeps a single trigger
    assert service.resume_job(job.id) is True
    assert len(service.scheduler.get_jobs()) == 1


def test_pause_and_resume_unknown_job(service):
    assert service.pause_job(404) is False
    assert service.resume_job(404) is False


def test_delete_job_terminates_and_removes(service, make_job, job_store, run_store):
    job = make_job(command="sleep 30")
    service.schedule(job)

    thread, holder = run_in_thread(service.coordinator.run_now, job)
    assert wait_for(lambda: service.registry.running_count(job.id) == 1)

    assert service.delete_job(job.id) is True
    thread.join(timeout=15)

    assert not thread.is_alive()
    assert job_store.get_job(job.id) is None
    assert not service.registry.has_schedule(job.id)
    assert service.delete_job(job.id) is False


def test_cleanup_old_runs(service, make_job, run_store):
    job = make_job()
    old = utcnow() - timedelta(days=45)
    old_run = run_store.insert_run(job.id, started_at=old)
    run_store.update_run(old_run, RunStatus.SUCCESS, "old", finished_at=old)
    recent_run = run_store.insert_run(job.id)
    run_store.update_run(recent_run, RunStatus.SUCCESS, "recent")
    still_running = run_store.insert_run(job.id, started_at=old)

    assert service.cleanup_old_runs() == 1

    assert run_store.get_run(old_run) is None
    assert run_store.get_run(recent_run) is not None
    assert run_store.get_run(still_running) is not None


def test_start_registers_retention_and_dispatches_manual_run(service, make_job, run_store):
    job = make_job(command="echo manual")
    service.start()
    assert service.is_running()
    assert service.scheduler.get_job(service.RETENTION_JOB_ID) is not None
    assert service.scheduler.get_job(service.RECONCILE_JOB_ID) is not None

    dispatch_id = service.run_job_now(job.id)

    assert dispatch_id.startswith(f"run-{job.id}-")
    assert wait_for(lambda: any(r.is_finished for r in run_store.list_runs(job.id)))
    run = run_store.list_runs(job.id)[0]
    assert run.status == RunStatus.SUCCESS
    assert run.output == "manual"


def test_run_job_now_unknown_job(service):
    assert service.run_job_now(404) is None


def test_start_rejects_invalid_config(service, config):
    config.retention.days = 0

    with pytest.raises(ValueError):
        service.start()

    assert not service.is_running()


def test_get_scheduled(service, make_job):
    job = make_job(name="listed", schedule="0 * * * *")
    service.schedule(job)

    scheduled = service.get_scheduled()

    assert len(scheduled) == 1
    assert scheduled[0]['job_id'] == job.id
    assert scheduled[0]['name'] == "listed"
    assert scheduled[0]['running'] == 0


def test_api_facade(service, make_job, run_store):
    job = make_job(command="echo facade")

    assert service.init_scheduler() == {'loaded': 1, 'skipped': 0, 'failed': 0}
    assert service.schedule_job(job) is False
    assert service.cancel_job(job.id) is True
    assert service.schedule_job(job) is True

    service.scheduler.start()
    dispatch_id = service.schedule_job(job, run_now=True)

    assert dispatch_id.startswith(f"run-{job.id}-")
    assert wait_for(lambda: any(r.is_finished for r in run_store.list_runs(job.id)))


def test_delete_while_run_is_starting(service, make_job, run_store, monkeypatch):
    job = make_job(command="sleep 30")
    service.schedule(job)

    reached_spawn = threading.Event()
    release_spawn = threading.Event()
    spawn = service.coordinator.runner.spawn

    def held_spawn(*args, **kwargs):
        reached_spawn.set()
        release_spawn.wait(10)
        return spawn(*args, **kwargs)

    monkeypatch.setattr(service.coordinator.runner, "spawn", held_spawn)

    thread, holder = run_in_thread(service.coordinator.run_now, job)
    assert reached_spawn.wait(10)

    # Status check already passed; nothing tracked yet
    assert service.delete_job(job.id) is True
    release_spawn.set()
    thread.join(timeout=15)

    assert not thread.is_alive()
    assert service.registry.running_count(job.id) == 0
    outcome = holder['result']
    assert outcome.status == RunStatus.ERROR
    assert outcome.result.duration_seconds < 10
    run = run_store.get_run(outcome.run_id)
    assert run.status == RunStatus.ERROR
    assert "[terminated: job was cancelled]" in run.output


def test_rescheduling_after_cancel_allows_runs(service, make_job):
    job = make_job(command="echo again")
    service.schedule(job)
    service.cancel(job.id)

    service.schedule(job)
    outcome = service.coordinator.run_now(job)

    assert outcome.succeeded


def test_manual_dispatch_never_misfires(service, make_job):
    job = make_job()

    dispatch_id = service.dispatch_run(job)

    dispatched = service.scheduler.get_job(dispatch_id)
    assert dispatched.misfire_grace_time is None


def test_reconcile_schedules_jobs_added_elsewhere(service, make_job):
    service.initialize()
    added = make_job(name="added later")
    make_job(name="paused", status=JobStatus.PAUSED)
    broken = make_job(name="broken", schedule="61 * * * *")

    counts = service.reconcile()

    assert counts == {'scheduled': 1, 'unscheduled': 0, 'cancelled': 0}
    assert service.registry.scheduled_ids() == [added.id]
    assert not service.registry.has_schedule(broken.id)
    assert service.reconcile() == {'scheduled': 0, 'unscheduled': 0, 'cancelled': 0}


def test_reconcile_unschedules_paused_job(service, make_job, job_store, run_store):
    job = make_job(command="sleep 1; echo survived")
    service.schedule(job)

    thread, holder = run_in_thread(service.coordinator.run_now, job)
    assert wait_for(lambda: service.registry.running_count(job.id) == 1)

    job_store.update_status(job.id, JobStatus.PAUSED)
    counts = service.reconcile()
    thread.join(timeout=15)

    assert counts['unscheduled'] == 1
    assert not service.registry.has_schedule(job.id)
    assert run_store.get_run(holder['result'].run_id).status == RunStatus.SUCCESS


def test_reconcile_cancels_deleted_job(service, make_job, job_store, run_store):
    job = make_job(command="sleep 30")
    service.schedule(job)

    thread, holder = run_in_thread(service.coordinator.run_now, job)
    assert wait_for(lambda: service.registry.running_count(job.id) == 1)

    job_store.delete(job.id)
    counts = service.reconcile()
    thread.join(timeout=15)

    assert counts['cancelled'] == 1
    assert not thread.is_alive()
    assert not service.registry.has_schedule(job.id)
    run = run_store.get_run(holder['result'].run_id)
    assert run.status == RunStatus.ERROR
    assert "[terminated: job was cancelled]" in run.output


def test_reconcile_survives_store_failure(service, monkeypatch):
    def broken_list(*args, **kwargs):
        raise PersistenceError("database is locked")

    monkeypatch.setattr(service.jobs, "list_jobs", broken_list)

    assert service.reconcile() == {'scheduled': 0, 'unscheduled': 0, 'cancelled': 0}
