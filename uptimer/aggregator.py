from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from .db import repo
from .errors import PersistenceError
from .rolling import RollingWindow
from .types import Heartbeat, HeartbeatStatus, Resolution, StatBucket, UptimeData

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


def bucket_key(ts: datetime, resolution: Resolution) -> int:
	"""Unix-время начала периода (UTC), содержащего ts."""
	if ts.tzinfo is None:
		ts = ts.replace(tzinfo=timezone.utc)
	seconds = int(ts.timestamp())
	period = resolution.period_seconds
	return seconds - seconds % period


def retention_cutoff(now: datetime, resolution: Resolution) -> int:
	return bucket_key(now - resolution.retention, resolution)


class HeartbeatAggregator:
	"""Скользящая статистика одного монитора в трёх разрешениях.

	Хвост истории хранится в RollingWindow, ёмкость которого совпадает с
	горизонтом хранения разрешения. Каждый update сначала фиксируется в БД,
	и только после успешного коммита применяется к кэшу.
	"""

	def __init__(self, monitor_id: int, *, clock: Optional[Clock] = None) -> None:
		self.monitor_id = monitor_id
		self._clock: Clock = clock or _utcnow
		self._windows: Dict[Resolution, RollingWindow[int, StatBucket]] = {
			r: RollingWindow(r.capacity) for r in Resolution
		}
		self._warmed = False

	def now(self) -> datetime:
		return self._clock()

	def window(self, resolution: Resolution) -> RollingWindow[int, StatBucket]:
		return self._windows[resolution]

	def warm(self) -> None:
		"""Загрузить сохранённые корзины, ещё не вышедшие за горизонт хранения."""
		now = self.now()
		for resolution, window in self._windows.items():
			cutoff = retention_cutoff(now, resolution)
			for bucket in repo.query_buckets(resolution, self.monitor_id, cutoff):
				window.push(bucket.timestamp, bucket)
		self._warmed = True
		logger.debug("aggregator warmed for monitor %s", self.monitor_id)

	@property
	def warmed(self) -> bool:
		return self._warmed

	@staticmethod
	def _delta(heartbeat: Heartbeat, key: int) -> StatBucket:
		delta = StatBucket(timestamp=key)
		if heartbeat.status == HeartbeatStatus.UP:
			delta.up_count = 1
			if heartbeat.ping is not None:
				delta.add_ping(heartbeat.ping)
		elif heartbeat.status == HeartbeatStatus.MAINTENANCE:
			delta.maintenance_count = 1
		else:
			# PENDING учитывается как DOWN
			delta.down_count = 1
		return delta

	def update(self, heartbeat: Heartbeat) -> None:
		if heartbeat.status != HeartbeatStatus.UP and heartbeat.ping:
			logger.warning(
				"monitor %s: ping %s ignored for %s heartbeat",
				self.monitor_id, heartbeat.ping, heartbeat.status.name,
			)
		deltas = {
			r: self._delta(heartbeat, bucket_key(heartbeat.ts, r)) for r in Resolution
		}
		try:
			repo.record_heartbeat(heartbeat, deltas)
		except Exception as e:
			logger.error("monitor %s: failed to persist heartbeat, rolled back: %s", self.monitor_id, e)
			raise PersistenceError(self.monitor_id, str(e)) from e

		for resolution, delta in deltas.items():
			window = self._windows[resolution]
			bucket = window.get(delta.timestamp)
			if bucket is None:
				bucket = StatBucket(timestamp=delta.timestamp)
				window.push(delta.timestamp, bucket)
			bucket.up_count += delta.up_count
			bucket.down_count += delta.down_count
			bucket.maintenance_count += delta.maintenance_count
			if delta.ping_count and heartbeat.ping is not None:
				bucket.add_ping(heartbeat.ping)

	def _capped(self, num_periods: int, resolution: Resolution) -> int:
		if not isinstance(num_periods, int) or num_periods < 1:
			raise ValueError("num_periods должен быть целым числом >= 1")
		capacity = self._windows[resolution].capacity
		if num_periods > capacity:
			logger.warning(
				"requested %s %s periods exceeds cache capacity %s, capped",
				num_periods, resolution.value, capacity,
			)
			return capacity
		return num_periods

	def _keys(self, num_periods: int, resolution: Resolution) -> range:
		period = resolution.period_seconds
		now_key = bucket_key(self.now(), resolution)
		start_key = now_key - period * (num_periods - 1)
		return range(start_key, now_key + 1, period)

	def get_uptime_data(self, num_periods: int, resolution: Resolution = Resolution.DAY) -> UptimeData:
		resolution = Resolution(resolution)
		num_periods = self._capped(num_periods, resolution)
		window = self._windows[resolution]
		up = down = 0
		ping_sum = 0.0
		ping_samples = 0
		for key in self._keys(num_periods, resolution):
			bucket = window.get(key)
			if bucket is None:
				continue
			# обслуживание засчитывается как доступность
			up += bucket.up_count + bucket.maintenance_count
			down += bucket.down_count
			if bucket.avg_ping is not None and bucket.ping_count > 0:
				ping_sum += bucket.avg_ping * bucket.ping_count
				ping_samples += bucket.ping_count
		total = up + down
		uptime = 1.0 if total == 0 else up / total
		avg_ping = None if ping_samples == 0 else round(ping_sum / ping_samples, 2)
		return UptimeData(uptime=round(uptime, 4), avg_ping=avg_ping)

	def get_stats_array(self, num_periods: int, resolution: Resolution = Resolution.DAY) -> list[StatBucket]:
		"""Корзины за num_periods периодов, от старых к новым; пропуски заполнены нулями."""
		resolution = Resolution(resolution)
		num_periods = self._capped(num_periods, resolution)
		window = self._windows[resolution]
		out: list[StatBucket] = []
		for key in self._keys(num_periods, resolution):
			bucket = window.get(key)
			out.append(bucket.copy(timestamp=key) if bucket is not None else StatBucket(timestamp=key))
		return out


class AggregatorRegistry:
	"""Реестр агрегаторов процесса по ID монитора; прогрев при первом обращении."""

	def __init__(self, *, clock: Optional[Clock] = None) -> None:
		self._clock = clock
		self._items: Dict[int, HeartbeatAggregator] = {}

	def get(self, monitor_id: int) -> HeartbeatAggregator:
		aggregator = self._items.get(monitor_id)
		if aggregator is None:
			aggregator = HeartbeatAggregator(monitor_id, clock=self._clock)
			aggregator.warm()
			self._items[monitor_id] = aggregator
		return aggregator

	def remove(self, monitor_id: int) -> None:
		self._items.pop(monitor_id, None)

	def __contains__(self, monitor_id: object) -> bool:
		return monitor_id in self._items

	def __len__(self) -> int:
		return len(self._items)


def cleanup_old_stats(now: Optional[datetime] = None, *, heartbeat_retention_days: Optional[int] = None) -> dict[str, int]:
	"""Удалить корзины старше горизонта своего разрешения и, опционально, старые heartbeat."""
	now = now or _utcnow()
	if heartbeat_retention_days is None:
		heartbeat_retention_days = int(os.getenv("HEARTBEAT_RETENTION_DAYS", "365"))
	removed: dict[str, int] = {}
	for resolution in Resolution:
		removed[resolution.value] = repo.delete_buckets_before(resolution, retention_cutoff(now, resolution))
	if heartbeat_retention_days > 0:
		removed["heartbeat"] = repo.delete_heartbeats_before(now - timedelta(days=heartbeat_retention_days))
	logger.info("retention cleanup done: %s", removed)
	return removed
