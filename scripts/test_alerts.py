import asyncio
import logging
import time

from uptimer.alerts import AlertTrigger
from uptimer.notifier import DeliveryError, Notifier
from uptimer.types import MonitorConfig, ProbeResult

MONITOR = MonitorConfig(id=5, name="api", url="https://api.example.com")


class _Recorder(Notifier):
	def __init__(self):
		self.events = []

	async def send(self, event):
		self.events.append(event)


class _Slow(Notifier):
	def __init__(self):
		self.delivered = []

	async def send(self, event):
		await asyncio.sleep(1)
		self.delivered.append(event)


class _Broken(Notifier):
	async def send(self, event):
		raise DeliveryError("no route")


def _result(is_up: bool) -> ProbeResult:
	return ProbeResult(monitor_id=MONITOR.id, status_code=200 if is_up else 500, latency_ms=30, is_up=is_up)


def test_should_fire_only_on_transition():
	assert not AlertTrigger.should_fire(None, True)
	assert not AlertTrigger.should_fire(None, False)
	assert not AlertTrigger.should_fire(True, True)
	assert AlertTrigger.should_fire(True, False)
	assert AlertTrigger.should_fire(False, True)


def test_sequence_fires_two_alerts():
	recorder = _Recorder()
	trigger = AlertTrigger(recorder)

	async def run():
		previous = None
		for is_up in (True, True, False, False, True):
			await trigger.evaluate(MONITOR, _result(is_up), previous)
			previous = is_up
		await trigger.drain()

	asyncio.run(run())
	assert [(e.previous_status, e.new_status) for e in recorder.events] == [(True, False), (False, True)]
	assert recorder.events[0].status_code == 500
	assert recorder.events[0].monitor_name == "api"


def test_delivery_failure_does_not_raise(caplog):
	trigger = AlertTrigger(_Broken())

	async def run():
		event = await trigger.evaluate(MONITOR, _result(False), True)
		await trigger.drain()
		return event

	with caplog.at_level(logging.ERROR, logger="uptimer.alerts"):
		event = asyncio.run(run())
	assert event is not None
	assert event.new_status is False
	assert "no route" in caplog.text
	assert trigger.pending == 0


def test_slow_delivery_does_not_block_caller():
	notifier = _Slow()
	trigger = AlertTrigger(notifier)

	async def run():
		started = time.perf_counter()
		event = await trigger.evaluate(MONITOR, _result(False), True)
		elapsed = time.perf_counter() - started
		pending = trigger.pending
		await trigger.drain()
		return event, elapsed, pending

	event, elapsed, pending = asyncio.run(run())
	assert event is not None
	assert elapsed < 0.5
	assert pending == 1
	assert notifier.delivered == [event]
	assert trigger.pending == 0
