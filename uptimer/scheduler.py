import asyncio
import logging
from datetime import datetime, timezone, timedelta
from time import perf_counter
from typing import Callable, Dict, Optional
import os

from uptimer.aggregator import AggregatorRegistry, cleanup_old_stats
from uptimer.alerts import AlertTrigger
from uptimer.checker import URLChecker, probe_monitor
from uptimer.errors import PersistenceError
from uptimer.metrics import pass_duration_seconds, persistence_errors_total, record_check
from uptimer.notifier import Notifier
from uptimer.notifier.factory import build_notifier_from_env
from uptimer.types import Heartbeat, MonitorConfig, PassSummary, ProbeResult, Resolution, StatBucket
from uptimer.db import repo

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_CHECKED = "checked"
_FAILED = "failed"
_SKIPPED = "skipped"


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


class Scheduler:
	def __init__(
		self,
		*,
		tick_seconds: int = 10,
		max_concurrency: int = 1,
		retry_delay_s: float = 1.0,
		cleanup_every_passes: int = 60,
		notifier: Optional[Notifier] = None,
		registry: Optional[AggregatorRegistry] = None,
		clock: Optional[Callable[[], datetime]] = None,
	) -> None:
		self._tick_seconds = max(1, tick_seconds)
		self._max_concurrency = max(1, max_concurrency)
		self._retry_delay_s = max(0.0, retry_delay_s)
		self._cleanup_every_passes = max(0, cleanup_every_passes)
		self._clock = clock or _utcnow
		self._stop_event = asyncio.Event()
		self._notifier = notifier or build_notifier_from_env()
		self._alerts = AlertTrigger(self._notifier)
		self._registry = registry or AggregatorRegistry(clock=self._clock)
		# защита от параллельной проверки одного монитора двумя проходами
		self._locks: Dict[int, asyncio.Lock] = {}
		self._passes = 0

	@property
	def registry(self) -> AggregatorRegistry:
		return self._registry

	def _lock_for(self, monitor_id: int) -> asyncio.Lock:
		lock = self._locks.get(monitor_id)
		if lock is None:
			lock = asyncio.Lock()
			self._locks[monitor_id] = lock
		return lock

	def is_in_flight(self, monitor_id: int) -> bool:
		lock = self._locks.get(monitor_id)
		return lock is not None and lock.locked()

	@staticmethod
	def is_due(monitor: MonitorConfig, last_check: Optional[datetime], now: datetime) -> bool:
		"""Монитор активен и с последней проверки прошло не меньше interval_s."""
		if not monitor.active:
			return False
		elapsed = now - (last_check or _EPOCH)
		return elapsed >= timedelta(seconds=monitor.interval_s)

	async def run(self) -> None:
		logger.info("Scheduler started: tick=%ss, concurrency=%s", self._tick_seconds, self._max_concurrency)
		while not self._stop_event.is_set():
			try:
				await self.run_scheduled_pass()
			except Exception as e:
				logger.exception("scheduler pass failed: %s", e)
			self._maybe_cleanup()
			try:
				await asyncio.wait_for(self._stop_event.wait(), timeout=self._tick_seconds)
			except asyncio.TimeoutError:
				pass
		await self.drain_alerts()
		logger.info("Scheduler stopped")

	def stop(self) -> None:
		self._stop_event.set()

	async def drain_alerts(self) -> None:
		await self._alerts.drain()

	def _maybe_cleanup(self) -> None:
		if not self._cleanup_every_passes or self._passes % self._cleanup_every_passes != 0:
			return
		try:
			cleanup_old_stats(self._clock())
		except Exception as e:
			logger.exception("retention cleanup failed: %s", e)

	async def run_scheduled_pass(self) -> PassSummary:
		"""Один проход: проверить все мониторы, у которых истёк интервал.

		Ошибка получения списка мониторов прерывает проход и пробрасывается;
		ошибки отдельных мониторов логируются и считаются в errors.
		"""
		started = perf_counter()
		logger.info("Starting check pass")
		monitors = repo.list_monitors()
		statuses = repo.list_statuses()
		now = self._clock()
		dues = [m for m in monitors if self.is_due(m, repo.last_check_time(statuses.get(m.id)), now)]
		self._passes += 1

		outcomes: list[str] = []
		if dues:
			semaphore = asyncio.Semaphore(self._max_concurrency)
			async with URLChecker(max_concurrent=self._max_concurrency, retry_delay_s=self._retry_delay_s) as checker:
				outcomes = await asyncio.gather(*[self._check_due(concurrency=semaphore, checker=checker, monitor=m) for m in dues])

		summary = PassSummary(
			checked=sum(1 for o in outcomes if o != _SKIPPED),
			errors=sum(1 for o in outcomes if o == _FAILED),
		)
		pass_duration_seconds.observe(perf_counter() - started)
		logger.info(
			"Finished check pass: monitors=%s due=%s checked=%s errors=%s",
			len(monitors), len(dues), summary.checked, summary.errors,
		)
		return summary

	async def _check_due(self, *, concurrency: asyncio.Semaphore, checker: URLChecker, monitor: MonitorConfig) -> str:
		async with concurrency:
			if self.is_in_flight(monitor.id):
				logger.info("monitor %s is already being checked, skipped", monitor.id)
				return _SKIPPED
			try:
				async with self._lock_for(monitor.id):
					# параллельный проход мог проверить монитор, пока этот ждал семафор
					if not self.is_due(monitor, repo.last_check_time(repo.get_status(monitor.id)), self._clock()):
						logger.info("monitor %s was checked by another pass, skipped", monitor.id)
						return _SKIPPED
					await self._check_one(monitor, checker)
				return _CHECKED
			except PersistenceError as e:
				persistence_errors_total.inc()
				logger.error("persistence failed for monitor %s: %s", monitor.id, e, extra={"monitor_id": monitor.id, "error_type": e.category.value})
				return _FAILED
			except Exception as e:
				logger.exception("check failed for monitor %s: %s", monitor.id, e, extra={"monitor_id": monitor.id})
				return _FAILED

	async def _check_one(self, monitor: MonitorConfig, checker: URLChecker) -> ProbeResult:
		result = await probe_monitor(monitor, checker)
		record_check(
			monitor.id,
			ok=result.is_up,
			error_type=(result.error_type.value if result.error_type else None),
			latency_value_ms=result.latency_ms,
		)
		# читаем прежний статус до перезаписи
		status = repo.get_status(monitor.id)
		previous = status.is_up if status is not None else None

		ts = self._clock()
		self._registry.get(monitor.id).update(Heartbeat.from_result(result, ts))
		repo.upsert_status(
			monitor.id,
			checked_at=ts,
			status_code=result.status_code,
			response_time=result.latency_ms,
			is_up=result.is_up,
			error=result.error_message,
		)
		await self._alerts.evaluate(monitor, result, previous)
		return result

	async def check_now(self, monitor_id: int) -> ProbeResult:
		"""Немедленная проверка одного монитора без учёта интервала и флага active."""
		monitor = repo.get_monitor(monitor_id)
		if monitor is None:
			raise LookupError(f"monitor {monitor_id} not found")
		async with self._lock_for(monitor_id):
			async with URLChecker(max_concurrent=1, retry_delay_s=self._retry_delay_s) as checker:
				return await self._check_one(monitor, checker)

	def forget(self, monitor_id: int) -> None:
		"""Освободить кэш и блокировку удалённого монитора."""
		self._registry.remove(monitor_id)
		lock = self._locks.get(monitor_id)
		if lock is not None and not lock.locked():
			self._locks.pop(monitor_id, None)

	def get_uptime_summary(self, monitor_id: int) -> dict:
		aggregator = self._registry.get(monitor_id)
		day = aggregator.get_uptime_data(24 * 60, Resolution.MINUTE)
		month = aggregator.get_uptime_data(30, Resolution.DAY)
		year = aggregator.get_uptime_data(365, Resolution.DAY)
		return {
			"uptime_24h": day.uptime,
			"uptime_30d": month.uptime,
			"uptime_1y": year.uptime,
			"avg_ping_24h": day.avg_ping,
		}

	def get_time_series(self, monitor_id: int, num_periods: int, resolution: Resolution) -> list[StatBucket]:
		return self._registry.get(monitor_id).get_stats_array(num_periods, resolution)


def from_env(**overrides) -> "Scheduler":
	try:
		tick = int(os.getenv("CHECK_TICK_SEC", "10"))
		concurrency = int(os.getenv("MAX_CONCURRENCY", "1"))
		retry_delay = float(os.getenv("RETRY_DELAY_S", "1.0"))
		cleanup_every = int(os.getenv("CLEANUP_EVERY_PASSES", "60"))
	except ValueError:
		logger.warning("invalid scheduler settings in environment, using defaults")
		tick, concurrency, retry_delay, cleanup_every = 10, 1, 1.0, 60
	params = dict(tick_seconds=tick, max_concurrency=concurrency, retry_delay_s=retry_delay, cleanup_every_passes=cleanup_every)
	params.update(overrides)
	return Scheduler(**params)
