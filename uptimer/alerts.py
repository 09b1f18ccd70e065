from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from .metrics import record_alert
from .notifier import Notifier, NotificationEvent
from .types import MonitorConfig, ProbeResult

logger = logging.getLogger(__name__)


class AlertTrigger:
	"""Оповещение только при переходе is_up True<->False.

	Доставка идёт фоновой задачей и не задерживает проход планировщика.
	"""

	def __init__(self, notifier: Notifier) -> None:
		self._notifier = notifier
		# ссылки на задачи держим до завершения, иначе их может собрать GC
		self._pending: Set[asyncio.Task] = set()

	@property
	def pending(self) -> int:
		return len(self._pending)

	@staticmethod
	def should_fire(previous_status: Optional[bool], new_status: bool) -> bool:
		# первой проверке сравнивать не с чем
		return previous_status is not None and previous_status != new_status

	async def evaluate(self, monitor: MonitorConfig, result: ProbeResult,
	                   previous_status: Optional[bool]) -> Optional[NotificationEvent]:
		if not self.should_fire(previous_status, result.is_up):
			return None
		event = NotificationEvent(
			monitor_id=monitor.id,
			monitor_name=monitor.name,
			url=monitor.url,
			previous_status=previous_status,
			new_status=result.is_up,
			status_code=result.status_code,
			response_time_ms=result.latency_ms,
			error_message=result.error_message,
		)
		record_alert(result.is_up)
		task = asyncio.create_task(self._notifier.send(event), name=f"alert-{monitor.id}")
		self._pending.add(task)
		task.add_done_callback(self._delivered)
		return event

	def _delivered(self, task: asyncio.Task) -> None:
		self._pending.discard(task)
		if task.cancelled():
			logger.warning("alert delivery cancelled: %s", task.get_name())
			return
		exc = task.exception()
		if exc is not None:
			# доставка не повторяется
			logger.error("alert delivery failed (%s): %s", task.get_name(), exc)

	async def drain(self) -> None:
		"""Дождаться доставки уже отправленных оповещений."""
		while self._pending:
			await asyncio.gather(*list(self._pending), return_exceptions=True)
