import asyncio
from datetime import timedelta

import pytest

from mailflow.config import settings
from mailflow.jobs.task_scheduler_job import TaskSchedulerJobError
from mailflow.models.domain.automation_domain import TemplateType
from mailflow.services import keys
from mailflow.services.lock_store import LockStore


async def _automation_task(harness, delay_minutes=0, **automation_kwargs):
    project = harness.add_project()
    contact = harness.add_contact(project)
    signup = harness.add_event(project, "signup")
    automation = harness.add_automation(project, [signup], **automation_kwargs)
    task = await harness.tasks.create(
        contact.id, harness.clock() + timedelta(minutes=delay_minutes), automation_id=automation.id
    )
    return project, contact, automation, task


@pytest.mark.asyncio
async def test_due_task_is_sent_and_retired(harness):
    project, contact, automation, task = await _automation_task(harness)

    metrics = await harness.make_scheduler().run_once()

    assert metrics["tasks_fetched"] == 1
    assert metrics["sent"] == 1
    assert len(harness.dispatcher.sent) == 1
    sent = harness.dispatcher.sent[0]
    assert sent["to"] == contact.email
    assert sent["sender_email"] == project.email
    assert sent["idempotency_key"] == f"task:{task.id}"
    assert sent["subject"] == "Welcome friend"

    assert task.id not in harness.store.tasks
    assert keys.task_lock(task.id) not in harness.redis.store
    assert len(harness.store.emails) == 1
    assert harness.store.emails[0].automation_id == automation.id
    assert harness.store.emails[0].message_id == sent["message_id"]


@pytest.mark.asyncio
async def test_future_tasks_are_left_alone(harness):
    _, _, _, task = await _automation_task(harness, delay_minutes=5)

    metrics = await harness.make_scheduler().run_once()

    assert metrics["tasks_fetched"] == 0
    assert task.id in harness.store.tasks
    assert harness.dispatcher.sent == []


@pytest.mark.asyncio
async def test_tasks_processed_in_due_order(harness):
    project = harness.add_project()
    signup = harness.add_event(project, "signup")
    automation = harness.add_automation(project, [signup])
    late = harness.add_contact(project, email="late@example.com")
    early = harness.add_contact(project, email="early@example.com")
    now = harness.clock()
    await harness.tasks.create(late.id, now - timedelta(minutes=1), automation_id=automation.id)
    await harness.tasks.create(early.id, now - timedelta(minutes=10), automation_id=automation.id)

    await harness.make_scheduler().run_once()

    assert [s["to"] for s in harness.dispatcher.sent] == ["early@example.com", "late@example.com"]


@pytest.mark.asyncio
async def test_locked_task_is_skipped(harness):
    _, _, _, task = await _automation_task(harness)
    harness.redis.store[keys.task_lock(task.id)] = "other-worker"

    metrics = await harness.make_scheduler().run_once()

    assert metrics["skipped_locked"] == 1
    assert harness.dispatcher.sent == []
    assert task.id in harness.store.tasks
    assert harness.redis.store[keys.task_lock(task.id)] == "other-worker"


@pytest.mark.asyncio
async def test_concurrent_schedulers_send_once(harness):
    _, _, _, task = await _automation_task(harness)
    harness.dispatcher.delay_seconds = 0.05

    first = harness.make_scheduler(LockStore(client=harness.redis, owner="worker-a"))
    second = harness.make_scheduler(LockStore(client=harness.redis, owner="worker-b"))

    results = await asyncio.gather(first.run_once(), second.run_once())

    assert len(harness.dispatcher.sent) == 1
    assert sorted(r["sent"] for r in results) == [0, 1]
    assert sorted(r["skipped_locked"] for r in results) == [0, 1]
    assert task.id not in harness.store.tasks
    assert len(harness.store.emails) == 1


@pytest.mark.asyncio
async def test_task_retired_after_fetch_is_not_resent(harness, monkeypatch):
    _, _, _, task = await _automation_task(harness)
    scheduler = harness.make_scheduler()
    original_find_due = harness.tasks.find_due

    async def stale_batch(now):
        # Another worker sends and retires the task after this batch was read
        batch = await original_find_due(now)
        del harness.store.tasks[task.id]
        return batch

    monkeypatch.setattr(harness.tasks, "find_due", stale_batch)

    metrics = await scheduler.run_once()

    assert metrics["tasks_fetched"] == 1
    assert metrics["skipped_retired"] == 1
    assert metrics["sent"] == 0
    assert harness.dispatcher.sent == []
    assert keys.task_lock(task.id) not in harness.redis.store


@pytest.mark.asyncio
async def test_missing_project_removes_its_tasks(harness):
    doomed_project, doomed_contact, _, doomed_task = await _automation_task(harness)
    other_project = harness.add_project()
    other_contact = harness.add_contact(other_project, email="bob@example.com")
    signup = harness.add_event(other_project, "signup")
    other_automation = harness.add_automation(other_project, [signup])
    pending = await harness.tasks.create(
        doomed_contact.id, harness.clock() + timedelta(days=1), automation_id=doomed_task.automation_id
    )
    await harness.tasks.create(other_contact.id, harness.clock(), automation_id=other_automation.id)
    del harness.store.projects[doomed_project.id]

    metrics = await harness.make_scheduler().run_once()

    assert metrics["orphan_cleanups"] == 1
    assert doomed_task.id not in harness.store.tasks
    assert pending.id not in harness.store.tasks
    assert [s["to"] for s in harness.dispatcher.sent] == ["bob@example.com"]
    assert keys.task_lock(doomed_task.id) not in harness.redis.store


@pytest.mark.asyncio
async def test_excluded_event_after_scheduling_drops_task(harness):
    project = harness.add_project()
    contact = harness.add_contact(project)
    signup = harness.add_event(project, "signup")
    cancelled = harness.add_event(project, "cancelled")
    automation = harness.add_automation(project, [signup], excluded=[cancelled], delay_minutes=60)
    task = await harness.tasks.create(
        contact.id, harness.clock() + timedelta(minutes=60), automation_id=automation.id
    )

    harness.clock.advance(minutes=30)
    harness.add_event_trigger(contact, cancelled)
    harness.clock.advance(minutes=30)

    metrics = await harness.make_scheduler().run_once()

    assert metrics["dropped"] == 1
    assert metrics["sent"] == 0
    assert harness.dispatcher.sent == []
    assert task.id not in harness.store.tasks
    assert keys.task_lock(task.id) not in harness.redis.store


@pytest.mark.asyncio
async def test_unsubscribed_contact_drops_marketing_task(harness):
    _, contact, _, task = await _automation_task(harness)
    await harness.contacts.update_subscribed(contact.id, False)

    metrics = await harness.make_scheduler().run_once()

    assert metrics["dropped"] == 1
    assert harness.dispatcher.sent == []
    assert task.id not in harness.store.tasks


@pytest.mark.asyncio
async def test_unsubscribed_contact_still_gets_transactional_task(harness):
    project = harness.add_project()
    contact = harness.add_contact(project, subscribed=False)
    signup = harness.add_event(project, "signup")
    template = harness.make_template(project, type=TemplateType.TRANSACTIONAL)
    automation = harness.add_automation(project, [signup], template=template)
    await harness.tasks.create(contact.id, harness.clock(), automation_id=automation.id)

    metrics = await harness.make_scheduler().run_once()

    assert metrics["sent"] == 1
    assert "unsubscribe" not in harness.dispatcher.sent[0]["html"]


@pytest.mark.asyncio
async def test_send_failure_keeps_task_and_lock(harness, delivery_error):
    _, _, _, task = await _automation_task(harness)
    harness.dispatcher.fail_with = delivery_error
    scheduler = harness.make_scheduler()

    metrics = await scheduler.run_once()

    assert metrics["failed"] == 1
    assert metrics["errors_count"] == 1
    assert task.id in harness.store.tasks
    assert keys.task_lock(task.id) in harness.redis.store
    assert harness.redis.ttls[keys.task_lock(task.id)] == settings.TASK_LOCK_TTL_SECONDS

    # No retry while the lease is live
    harness.dispatcher.fail_with = None
    metrics = await scheduler.run_once()
    assert metrics["skipped_locked"] == 1
    assert harness.dispatcher.sent == []

    # Lease expiry makes the task eligible again
    harness.redis.expire(keys.task_lock(task.id))
    metrics = await scheduler.run_once()
    assert metrics["sent"] == 1
    assert task.id not in harness.store.tasks


@pytest.mark.asyncio
async def test_unexpected_error_is_recorded_without_aborting_batch(harness):
    project = harness.add_project()
    signup = harness.add_event(project, "signup")
    automation = harness.add_automation(project, [signup])
    first = harness.add_contact(project, email="first@example.com")
    second = harness.add_contact(project, email="second@example.com")
    now = harness.clock()
    await harness.tasks.create(first.id, now - timedelta(minutes=2), automation_id=automation.id)
    await harness.tasks.create(second.id, now - timedelta(minutes=1), automation_id=automation.id)

    original_send = harness.dispatcher.send
    calls = {"n": 0}

    async def flaky_send(**kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("boom")
        return await original_send(**kwargs)

    harness.dispatcher.send = flaky_send

    metrics = await harness.make_scheduler().run_once()

    assert metrics["failed"] == 1
    assert metrics["sent"] == 1
    assert [s["to"] for s in harness.dispatcher.sent] == ["second@example.com"]


@pytest.mark.asyncio
async def test_configuration_error_drops_task_and_releases_lock(harness):
    _, _, automation, task = await _automation_task(harness)
    del harness.store.automations[automation.id]

    metrics = await harness.make_scheduler().run_once()

    assert metrics["dropped"] == 1
    assert metrics["failed"] == 0
    assert task.id not in harness.store.tasks
    assert keys.task_lock(task.id) not in harness.redis.store


@pytest.mark.asyncio
async def test_missing_template_drops_task(harness):
    _, _, _, task = await _automation_task(harness, with_template=False)

    metrics = await harness.make_scheduler().run_once()

    assert metrics["dropped"] == 1
    assert harness.dispatcher.sent == []
    assert task.id not in harness.store.tasks


@pytest.mark.asyncio
async def test_missing_contact_drops_task(harness):
    _, contact, _, task = await _automation_task(harness)
    del harness.store.contacts[contact.id]

    metrics = await harness.make_scheduler().run_once()

    assert metrics["dropped"] == 1
    assert task.id not in harness.store.tasks


@pytest.mark.asyncio
async def test_failed_delete_does_not_cause_resend(harness):
    _, _, _, task = await _automation_task(harness)
    harness.tasks.fail_delete = True
    scheduler = harness.make_scheduler()

    metrics = await scheduler.run_once()

    assert metrics["sent"] == 1
    assert task.id in harness.store.tasks
    assert keys.task_lock(task.id) not in harness.redis.store

    harness.tasks.fail_delete = False
    metrics = await scheduler.run_once()

    assert metrics["deduplicated"] == 1
    assert metrics["sent"] == 0
    assert len(harness.dispatcher.sent) == 1
    assert len(harness.store.emails) == 1
    assert task.id not in harness.store.tasks


@pytest.mark.asyncio
async def test_due_query_failure_raises(harness):
    harness.tasks.fail_find = True
    scheduler = harness.make_scheduler()

    with pytest.raises(TaskSchedulerJobError) as exc_info:
        await scheduler.run_once()

    assert exc_info.value.operation == "find_due_tasks"
    assert scheduler.is_running is False


@pytest.mark.asyncio
async def test_send_timeout_counts_as_failure(harness, monkeypatch):
    _, _, _, task = await _automation_task(harness)
    monkeypatch.setattr(settings, "SEND_TIMEOUT_SECONDS", 0.01)
    harness.dispatcher.delay_seconds = 0.5

    metrics = await harness.make_scheduler().run_once()

    assert metrics["failed"] == 1
    assert task.id in harness.store.tasks
    assert keys.task_lock(task.id) in harness.redis.store
    assert harness.store.emails == []


@pytest.mark.asyncio
async def test_campaign_task_renders_with_footer(harness):
    project = harness.add_project()
    contact = harness.add_contact(project)
    campaign = harness.add_campaign(project, [contact])
    await harness.tasks.create(contact.id, harness.clock(), campaign_id=campaign.id)

    metrics = await harness.make_scheduler().run_once()

    assert metrics["sent"] == 1
    sent = harness.dispatcher.sent[0]
    assert sent["subject"] == "Spring Sale!"
    assert f"Hello {contact.email}" in sent["html"]
    assert f"/unsubscribe/{contact.id}" in sent["html"]
    assert harness.store.emails[0].campaign_id == campaign.id


@pytest.mark.asyncio
async def test_campaign_task_for_unsubscribed_contact_dropped(harness):
    project = harness.add_project()
    contact = harness.add_contact(project, subscribed=False)
    campaign = harness.add_campaign(project, [contact])
    await harness.tasks.create(contact.id, harness.clock(), campaign_id=campaign.id)

    metrics = await harness.make_scheduler().run_once()

    assert metrics["dropped"] == 1
    assert harness.dispatcher.sent == []


@pytest.mark.asyncio
async def test_run_once_skips_when_already_running(harness):
    scheduler = harness.make_scheduler()
    scheduler.is_running = True

    result = await scheduler.run_once()

    assert result == {"skipped": True, "reason": "already_running"}


@pytest.mark.asyncio
async def test_job_status_reports_last_run(harness):
    scheduler = harness.make_scheduler()
    assert scheduler.get_job_status()["last_run_time"] is None

    await scheduler.run_once()
    status = scheduler.get_job_status()

    assert status["job_name"] == "task_scheduler"
    assert status["is_running"] is False
    assert status["last_run_time"] == harness.clock().isoformat()
    assert status["last_run_metrics"]["tasks_fetched"] == 0
