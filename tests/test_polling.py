import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from calmirror.client.polling import FOCUS, PageVisibility, PollScheduler


class CallbackRecorder:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1


@pytest.fixture
def callback():
    return CallbackRecorder()


@pytest.fixture
def scheduler():
    # Not started: jobs stay pending, so tests drive ticks by hand
    return AsyncIOScheduler()


@pytest.fixture
def visibility():
    return PageVisibility()


@pytest.fixture
def poller(callback, scheduler, visibility):
    poll_scheduler = PollScheduler(callback, 30, visibility=visibility, scheduler=scheduler)
    yield poll_scheduler
    poll_scheduler.dispose()


def job_count(scheduler) -> int:
    return len(scheduler.get_jobs())


class TestPollScheduler:
    def test_rejects_non_positive_interval(self, callback):
        with pytest.raises(ValueError):
            PollScheduler(callback, 0)

    def test_start_arms_one_interval_job(self, poller, scheduler):
        poller.start()
        assert poller.is_armed
        assert job_count(scheduler) == 1
        job = scheduler.get_job(poller.job_id)
        assert job.trigger.interval.total_seconds() == 30

    def test_start_while_disabled_arms_nothing(self, callback, scheduler, visibility):
        poller = PollScheduler(callback, 30, enabled=False, visibility=visibility, scheduler=scheduler)
        poller.start()
        assert not poller.is_armed
        poller.dispose()

    def test_start_while_hidden_arms_nothing(self, callback, scheduler):
        poller = PollScheduler(
            callback, 30, visibility=PageVisibility(hidden=True), scheduler=scheduler
        )
        poller.start()
        assert not poller.is_armed
        poller.dispose()

    def test_enabling_twice_keeps_a_single_job(self, poller, scheduler):
        poller.start()
        poller.set_enabled(True)
        poller.set_enabled(True)
        assert job_count(scheduler) == 1

    def test_disabling_removes_job(self, poller):
        poller.start()
        poller.set_enabled(False)
        assert not poller.is_armed

    async def test_hiding_stops_ticks_and_showing_triggers_immediately(self, poller, callback, visibility, scheduler):
        poller.start()

        await visibility.set_hidden(True)
        assert not poller.is_armed
        assert callback.calls == 0

        await visibility.set_hidden(False)
        assert callback.calls == 1
        assert poller.is_armed
        assert job_count(scheduler) == 1

    async def test_repeated_visibility_never_duplicates_jobs(self, poller, callback, visibility, scheduler):
        poller.start()
        for _ in range(3):
            await visibility.set_hidden(False)
        assert callback.calls == 3
        assert job_count(scheduler) == 1

    async def test_blur_and_focus(self, poller, callback, visibility):
        poller.start()

        await visibility.blur()
        assert not poller.is_armed

        await visibility.focus()
        assert callback.calls == 1
        assert poller.is_armed

    async def test_visibility_while_disabled_does_not_trigger(self, callback, scheduler, visibility):
        poller = PollScheduler(callback, 30, enabled=False, visibility=visibility, scheduler=scheduler)
        poller.start()

        await visibility.set_hidden(False)
        await visibility.focus()

        assert callback.calls == 0
        assert not poller.is_armed
        poller.dispose()

    async def test_interval_tick_invokes_callback(self, poller, callback, scheduler):
        poller.start()
        await scheduler.get_job(poller.job_id).func()
        assert callback.calls == 1

    async def test_tick_while_hidden_is_dropped(self, poller, callback, scheduler, visibility):
        poller.start()
        tick = scheduler.get_job(poller.job_id).func

        await visibility.blur()
        await tick()

        assert callback.calls == 0
        assert poller.dropped_ticks == 1

    async def test_dispose_removes_job_and_listeners(self, poller, callback, visibility):
        poller.start()
        assert visibility.listener_count() == 3

        poller.dispose()
        assert not poller.is_armed
        assert visibility.listener_count() == 0

        await visibility.set_hidden(False)
        assert callback.calls == 0

    def test_start_twice_does_not_double_listeners(self, poller, visibility):
        poller.start()
        poller.start()
        assert visibility.listener_count() == 3


class TestPageVisibility:
    def test_unknown_event_is_rejected(self):
        async def listener():
            pass

        with pytest.raises(ValueError):
            PageVisibility().add_listener("resize", listener)

    async def test_listeners_run_in_registration_order(self):
        visibility = PageVisibility()
        order = []

        async def first():
            order.append("first")

        async def second():
            order.append("second")

        visibility.add_listener("focus", first)
        visibility.add_listener("focus", second)
        await visibility.focus()

        assert order == ["first", "second"]
        assert visibility.focused

    async def test_failing_refresh_keeps_polling_and_later_listeners(self, scheduler, visibility):
        async def failing():
            raise RuntimeError("server unreachable")

        poller = PollScheduler(failing, 30, visibility=visibility, scheduler=scheduler)
        poller.start()
        later = CallbackRecorder()
        visibility.add_listener(FOCUS, later)

        await visibility.blur()
        await visibility.focus()

        assert poller.is_armed
        assert later.calls == 1

        await visibility.set_hidden(True)
        await visibility.set_hidden(False)
        assert poller.is_armed
        poller.dispose()
