import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from uptimer.db import repo
from uptimer.checker import URLChecker
from uptimer.notifier import Notifier
from uptimer.scheduler import Scheduler, from_env
from uptimer.types import MonitorConfig, PassSummary, Resolution


class _Recorder(Notifier):
	def __init__(self):
		self.events = []

	async def send(self, event):
		self.events.append(event)


def _app(state):
	async def ok(request):
		return web.Response(text="ok")

	async def fail(request):
		return web.Response(status=500)

	async def toggle(request):
		return web.Response(status=200 if state.get("up", True) else 503)

	app = web.Application()
	app.router.add_get("/ok", ok)
	app.router.add_get("/fail", fail)
	app.router.add_get("/toggle", toggle)
	return app


def _with_server(scenario, state=None):
	"""Запустить сценарий с локальным сервером внутри одного event loop."""
	state = state if state is not None else {}

	async def run():
		server = TestServer(_app(state))
		await server.start_server()
		try:
			return await scenario(server)
		finally:
			await server.close()
	return asyncio.run(run())


def _scheduler(**kw) -> Scheduler:
	kw.setdefault("notifier", _Recorder())
	kw.setdefault("retry_delay_s", 0)
	return Scheduler(**kw)


def test_is_due():
	now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
	m = MonitorConfig(id=1, name="m", url="http://example.com", interval_s=60)
	assert Scheduler.is_due(m, None, now)
	assert not Scheduler.is_due(m, now - timedelta(seconds=59), now)
	assert Scheduler.is_due(m, now - timedelta(seconds=60), now)
	paused = MonitorConfig(id=2, name="p", url="http://example.com", active=False)
	assert not Scheduler.is_due(paused, None, now)


def test_scheduled_pass_checks_due_monitors():
	scheduler = _scheduler(max_concurrency=2)

	async def scenario(server):
		up = repo.create_monitor("up", str(server.make_url("/ok")))
		down = repo.create_monitor("down", str(server.make_url("/fail")))
		repo.create_monitor("paused", str(server.make_url("/ok")), active=False)
		first = await scheduler.run_scheduled_pass()
		second = await scheduler.run_scheduled_pass()
		return up, down, first, second

	up, down, first, second = _with_server(scenario)
	# упавший сервис это результат проверки, а не ошибка прохода
	assert first == PassSummary(checked=2, errors=0)
	# интервал ещё не истёк
	assert second == PassSummary(checked=0, errors=0)

	statuses = repo.list_statuses()
	assert statuses[up.id].is_up is True
	assert statuses[up.id].total_checks == 1
	assert statuses[down.id].is_up is False
	assert statuses[down.id].last_status_code == 500

	summary = scheduler.get_uptime_summary(up.id)
	assert summary["uptime_24h"] == 1.0
	assert summary["avg_ping_24h"] is not None
	assert scheduler.get_uptime_summary(down.id)["uptime_24h"] == 0.0
	assert len(repo.get_heartbeats(down.id, 10)) == 1


def test_alert_on_status_change():
	notifier = _Recorder()
	scheduler = _scheduler(notifier=notifier)
	state = {"up": True}

	async def scenario(server):
		m = repo.create_monitor("toggle", str(server.make_url("/toggle")))
		results = [await scheduler.check_now(m.id)]
		state["up"] = False
		results.append(await scheduler.check_now(m.id))
		results.append(await scheduler.check_now(m.id))
		state["up"] = True
		results.append(await scheduler.check_now(m.id))
		await scheduler.drain_alerts()
		return m, results

	m, results = _with_server(scenario, state)
	assert [r.is_up for r in results] == [True, False, False, True]
	assert [(e.previous_status, e.new_status) for e in notifier.events] == [(True, False), (False, True)]
	assert repo.get_status(m.id).total_checks == 4
	assert [e["status"] for e in repo.get_status_changes(m.id, 10)] == [1, 0, 1]


def test_persistence_error_does_not_stop_pass(monkeypatch):
	scheduler = _scheduler()
	original = repo.record_heartbeat

	async def scenario(server):
		good = repo.create_monitor("good", str(server.make_url("/ok")))
		bad = repo.create_monitor("bad", str(server.make_url("/ok")))

		def flaky_record(heartbeat, deltas):
			if heartbeat.monitor_id == bad.id:
				raise RuntimeError("database is locked")
			return original(heartbeat, deltas)

		monkeypatch.setattr(repo, "record_heartbeat", flaky_record)
		return good, bad, await scheduler.run_scheduled_pass()

	good, bad, summary = _with_server(scenario)
	assert summary == PassSummary(checked=2, errors=1)
	assert repo.get_status(good.id).total_checks == 1
	# статус не обновляется, если heartbeat не записан
	assert repo.get_status(bad.id).total_checks == 0


def test_monitor_listing_failure_propagates(monkeypatch):
	scheduler = _scheduler()

	def broken():
		raise RuntimeError("connection refused")

	monkeypatch.setattr(repo, "list_monitors", broken)
	with pytest.raises(RuntimeError):
		asyncio.run(scheduler.run_scheduled_pass())


def test_check_now_unknown_monitor():
	with pytest.raises(LookupError):
		asyncio.run(_scheduler().check_now(12345))


def test_in_flight_monitor_skipped():
	scheduler = _scheduler()

	async def scenario(server):
		m = repo.create_monitor("busy", str(server.make_url("/ok")))
		async with scheduler._lock_for(m.id):
			assert scheduler.is_in_flight(m.id)
			summary = await scheduler.run_scheduled_pass()
		return m, summary

	m, summary = _with_server(scenario)
	assert summary == PassSummary(checked=0, errors=0)
	assert repo.get_status(m.id).total_checks == 0


def test_time_series_and_forget():
	scheduler = _scheduler()

	async def scenario(server):
		m = repo.create_monitor("series", str(server.make_url("/ok")))
		await scheduler.check_now(m.id)
		return m

	m = _with_server(scenario)
	series = scheduler.get_time_series(m.id, 3, Resolution.MINUTE)
	assert len(series) == 3
	assert series[-1].up_count == 1
	assert m.id in scheduler.registry
	scheduler.forget(m.id)
	assert m.id not in scheduler.registry


def test_from_env(monkeypatch):
	monkeypatch.setenv("CHECK_TICK_SEC", "5")
	monkeypatch.setenv("MAX_CONCURRENCY", "4")
	s = from_env(notifier=_Recorder())
	assert s._tick_seconds == 5
	assert s._max_concurrency == 4

	monkeypatch.setenv("MAX_CONCURRENCY", "many")
	assert from_env(notifier=_Recorder())._max_concurrency == 1


def test_monitor_checked_by_overlapping_pass_is_skipped():
	"""Монитор из устаревшего списка не проверяется повторно в том же интервале."""
	scheduler = _scheduler()

	async def scenario(server):
		m = repo.create_monitor("overlap", str(server.make_url("/ok")))
		# другой проход успел проверить монитор после того, как этот составил список
		await scheduler.check_now(m.id)
		async with URLChecker(retry_delay_s=0) as checker:
			outcome = await scheduler._check_due(concurrency=asyncio.Semaphore(1), checker=checker, monitor=m)
		return m, outcome

	m, outcome = _with_server(scenario)
	assert outcome == "skipped"
	assert repo.get_status(m.id).total_checks == 1
	assert len(repo.get_heartbeats(m.id, 10)) == 1
