import asyncio
from datetime import timedelta

import pytest
from django.db import InterfaceError
from django.utils import timezone

from cells.models import RefreshJob
from sync.errors import NotFoundError, PersistenceError, TransientProviderError, wraps_db_errors
from sync.queue import (
    ACTIVE,
    FAILED,
    PENDING,
    RETRYING,
    DatabaseQueue,
    InMemoryQueue,
    retry_delay,
)

TOPIC = 'test-topic'


def test_retry_delay_doubles():
    assert [retry_delay(n, 1.0) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert retry_delay(1, 0) == 0


async def test_enqueue_dedups_open_jobs():
    queue = InMemoryQueue()

    assert await queue.enqueue(TOPIC, {'n': 1}, dedup_key='cell:a')
    assert not await queue.enqueue(TOPIC, {'n': 2}, dedup_key='cell:a')
    assert await queue.enqueue(TOPIC, {'n': 3}, dedup_key='cell:b')

    assert queue.open_count(TOPIC) == 2
    assert (await queue.get_job('cell:a')).payload == {'n': 1}


async def test_active_job_still_blocks_enqueue():
    queue = InMemoryQueue()
    await queue.enqueue(TOPIC, {}, dedup_key='cell:a')
    job = await queue.claim(TOPIC, timezone.now())

    assert job.status == ACTIVE
    assert job.attempts_made == 1
    assert not await queue.enqueue(TOPIC, {}, dedup_key='cell:a')


async def test_completed_job_frees_key():
    queue = InMemoryQueue()
    await queue.enqueue(TOPIC, {}, dedup_key='cell:a')
    await queue.complete(await queue.claim(TOPIC, timezone.now()))

    assert await queue.get_job('cell:a') is None
    assert await queue.enqueue(TOPIC, {}, dedup_key='cell:a')


async def test_claim_respects_backoff():
    queue = InMemoryQueue()
    await queue.enqueue(TOPIC, {}, dedup_key='cell:a', backoff_delay=5)
    now = timezone.now()
    job = await queue.claim(TOPIC, now)

    assert await queue.fail(job, 'boom', retryable=True, now=now) == RETRYING
    assert job.available_at == now + timedelta(seconds=5)

    assert await queue.claim(TOPIC, now + timedelta(seconds=4)) is None
    again = await queue.claim(TOPIC, now + timedelta(seconds=5))
    assert again.attempts_made == 2
    await queue.fail(again, 'boom', retryable=True, now=now)
    assert again.available_at == now + timedelta(seconds=10)


async def test_claim_ignores_other_topics():
    queue = InMemoryQueue()
    await queue.enqueue('other', {}, dedup_key='cell:a')
    assert await queue.claim(TOPIC, timezone.now()) is None


async def test_consume_retries_then_fails():
    queue = InMemoryQueue()
    await queue.enqueue(TOPIC, {}, dedup_key='cell:a', max_attempts=3, backoff_delay=0)
    calls = []

    async def handler(job):
        calls.append(job.attempts_made)
        raise TransientProviderError('provider down')

    await queue.consume(TOPIC, handler, 2, poll_interval=0.01, stop_when_idle=True)

    assert calls == [1, 2, 3]
    failed = await queue.failed_jobs(TOPIC)
    assert [j.id for j in failed] == ['cell:a']
    assert failed[0].last_error == 'provider down'
    assert queue.open_count() == 0


async def test_non_retryable_error_fails_at_once():
    queue = InMemoryQueue()
    await queue.enqueue(TOPIC, {}, dedup_key='cell:gone', backoff_delay=0)
    calls = []

    async def handler(job):
        calls.append(job.id)
        raise NotFoundError('no such cell')

    await queue.consume(TOPIC, handler, poll_interval=0.01, stop_when_idle=True)

    assert calls == ['cell:gone']
    assert (await queue.get_job('cell:gone')).status == FAILED


async def test_failed_job_allows_new_enqueue():
    queue = InMemoryQueue()
    await queue.enqueue(TOPIC, {}, dedup_key='cell:a')
    job = await queue.claim(TOPIC, timezone.now())
    await queue.fail(job, 'bad', retryable=False, now=timezone.now())

    assert await queue.enqueue(TOPIC, {}, dedup_key='cell:a')
    assert len(await queue.failed_jobs(TOPIC)) == 1


async def test_consume_bounds_concurrency():
    queue = InMemoryQueue()
    for i in range(12):
        await queue.enqueue(TOPIC, {'i': i}, dedup_key=f'cell:{i}')
    in_flight = 0
    peak = 0

    async def handler(job):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1

    await queue.consume(TOPIC, handler, 3, poll_interval=0.01, stop_when_idle=True)

    assert peak == 3
    assert queue.completed_count == 12


async def test_one_failing_job_does_not_block_others():
    queue = InMemoryQueue()
    for key in ('cell:bad', 'cell:ok1', 'cell:ok2'):
        await queue.enqueue(TOPIC, {}, dedup_key=key, backoff_delay=0)
    completed = []

    async def handler(job):
        if job.id == 'cell:bad':
            raise ValueError('broken payload')
        return job.id

    await queue.consume(TOPIC, handler, 1, poll_interval=0.01, stop_when_idle=True,
                        on_completed=lambda job, result: completed.append(result))

    assert sorted(completed) == ['cell:ok1', 'cell:ok2']
    assert [j.id for j in await queue.failed_jobs(TOPIC)] == ['cell:bad']


async def test_stop_event_ends_consume():
    queue = InMemoryQueue()
    stop = asyncio.Event()

    async def handler(job):
        pass

    task = asyncio.create_task(queue.consume(TOPIC, handler, poll_interval=0.01, stop_event=stop))
    await asyncio.sleep(0.03)
    stop.set()
    await asyncio.wait_for(task, 1)


async def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        await InMemoryQueue().consume(TOPIC, None, 0)


@pytest.mark.django_db(transaction=True)
class TestDatabaseQueue:

    async def test_dedup_on_open_rows(self):
        queue = DatabaseQueue()

        assert await queue.enqueue(TOPIC, {'cell_id': 'a'}, dedup_key='cell:a')
        assert not await queue.enqueue(TOPIC, {'cell_id': 'a'}, dedup_key='cell:a')
        assert await RefreshJob.objects.acount() == 1

    async def test_claim_marks_active(self):
        queue = DatabaseQueue()
        await queue.enqueue(TOPIC, {'cell_id': 'a'}, dedup_key='cell:a')

        job = await queue.claim(TOPIC, timezone.now())

        assert job.id == 'cell:a'
        assert job.payload == {'cell_id': 'a'}
        assert job.attempts_made == 1
        assert await queue.claim(TOPIC, timezone.now()) is None
        row = await RefreshJob.objects.aget(pk=job.pk)
        assert row.status == ACTIVE

    async def test_claim_in_order(self):
        queue = DatabaseQueue()
        for key in ('cell:1', 'cell:2', 'cell:3'):
            await queue.enqueue(TOPIC, {}, dedup_key=key)

        now = timezone.now()
        claimed = [(await queue.claim(TOPIC, now)).id for _ in range(3)]

        assert claimed == ['cell:1', 'cell:2', 'cell:3']

    async def test_complete_deletes_row(self):
        queue = DatabaseQueue()
        await queue.enqueue(TOPIC, {}, dedup_key='cell:a')
        await queue.complete(await queue.claim(TOPIC, timezone.now()))

        assert await RefreshJob.objects.acount() == 0
        assert await queue.enqueue(TOPIC, {}, dedup_key='cell:a')

    async def test_retry_then_failure_is_retained(self):
        queue = DatabaseQueue()
        await queue.enqueue(TOPIC, {}, dedup_key='cell:a', max_attempts=2, backoff_delay=1)
        now = timezone.now()

        job = await queue.claim(TOPIC, now)
        assert await queue.fail(job, 'timeout', retryable=True, now=now) == RETRYING
        row = await RefreshJob.objects.aget(pk=job.pk)
        assert row.status == PENDING
        assert row.available_at == now + timedelta(seconds=1)

        job = await queue.claim(TOPIC, now + timedelta(seconds=1))
        assert job.attempts_made == 2
        assert await queue.fail(job, 'timeout', retryable=True, now=now) == FAILED

        failed = await queue.failed_jobs(TOPIC)
        assert [j.id for j in failed] == ['cell:a']
        assert failed[0].last_error == 'timeout'

        # a failed row does not hold the key
        assert await queue.enqueue(TOPIC, {}, dedup_key='cell:a')
        assert (await queue.get_job('cell:a')).status == PENDING

    async def test_stalled_job_is_recovered(self):
        queue = DatabaseQueue(stalled_after=timedelta(minutes=10))
        await queue.enqueue(TOPIC, {}, dedup_key='cell:a')
        now = timezone.now()
        job = await queue.claim(TOPIC, now)
        await RefreshJob.objects.filter(pk=job.pk).aupdate(
            updated_at=now - timedelta(minutes=11),
        )

        again = await queue.claim(TOPIC, now)

        assert again.pk == job.pk
        assert again.attempts_made == 2

    async def test_stalled_job_out_of_attempts_fails(self):
        queue = DatabaseQueue(stalled_after=timedelta(minutes=10))
        await queue.enqueue(TOPIC, {}, dedup_key='cell:a', max_attempts=1)
        now = timezone.now()
        job = await queue.claim(TOPIC, now)
        await RefreshJob.objects.filter(pk=job.pk).aupdate(
            updated_at=now - timedelta(minutes=11),
        )

        assert await queue.claim(TOPIC, now) is None
        row = await RefreshJob.objects.aget(pk=job.pk)
        assert row.status == FAILED
        assert row.last_error == 'stalled'

    async def test_consume_against_table(self):
        queue = DatabaseQueue()
        for i in range(4):
            await queue.enqueue(TOPIC, {'cell_id': str(i)}, dedup_key=f'cell:{i}')
        seen = []

        async def handler(job):
            seen.append(job.payload['cell_id'])

        await queue.consume(TOPIC, handler, 2, poll_interval=0.01, stop_when_idle=True)

        assert sorted(seen) == ['0', '1', '2', '3']
        assert await RefreshJob.objects.acount() == 0


async def test_closed_connection_becomes_persistence_error():
    @wraps_db_errors
    async def query():
        raise InterfaceError('connection already closed')

    with pytest.raises(PersistenceError, match='connection already closed'):
        await query()


@pytest.mark.django_db(transaction=True)
class TestDatabaseQueueRecovery:

    async def test_claim_survives_closed_connection(self, monkeypatch):
        queue = DatabaseQueue()
        await queue.enqueue(TOPIC, {'cell_id': 'a'}, dedup_key='cell:a')

        recover = DatabaseQueue._recover_stalled
        failures = ['connection already closed']
        resets = []

        async def flaky_recover(self, topic, now):
            if failures:
                raise InterfaceError(failures.pop())
            return await recover(self, topic, now)

        async def record_reset(self):
            resets.append(True)

        monkeypatch.setattr(DatabaseQueue, '_recover_stalled', flaky_recover)
        monkeypatch.setattr(DatabaseQueue, 'reset_connections', record_reset)
        seen = []

        async def handler(job):
            seen.append(job.id)

        await queue.consume(TOPIC, handler, poll_interval=0.01, stop_when_idle=True)

        assert seen == ['cell:a']
        assert resets == [True]
        assert await RefreshJob.objects.acount() == 0

    async def test_reset_connections_runs(self):
        # the real hook must be safe to call between polls
        await DatabaseQueue().reset_connections()
        assert await RefreshJob.objects.acount() == 0

    async def test_reclaimed_job_ignores_first_holder(self):
        queue = DatabaseQueue(stalled_after=timedelta(minutes=10))
        await queue.enqueue(TOPIC, {}, dedup_key='cell:a')
        now = timezone.now()
        first = await queue.claim(TOPIC, now)
        await RefreshJob.objects.filter(pk=first.pk).aupdate(
            updated_at=now - timedelta(minutes=11),
        )
        second = await queue.claim(TOPIC, now)

        # the original worker finishes late
        await queue.complete(first)
        await queue.fail(first, 'late', retryable=False, now=now)

        row = await RefreshJob.objects.aget(pk=second.pk)
        assert row.status == ACTIVE
        assert row.attempts_made == 2
        assert row.last_error == ''

        await queue.complete(second)
        assert await RefreshJob.objects.acount() == 0
