from __future__ import annotations

from .types import FailureCategory


class PersistenceError(Exception):
	"""Ошибка записи статистики/heartbeat; транзакция уже откатана."""

	category = FailureCategory.PERSISTENCE_ERROR

	def __init__(self, monitor_id: int, message: str) -> None:
		super().__init__(f"monitor {monitor_id}: {message}")
		self.monitor_id = monitor_id
