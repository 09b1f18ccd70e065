from __future__ import annotations

import logging

from .base import Notifier
from .types import NotificationEvent, status_text


_level_map = {
	"info": logging.INFO,
	"warn": logging.WARN,
	"error": logging.ERROR,
}


class LogNotifier(Notifier):
	def __init__(self) -> None:
		self._logger = logging.getLogger("notifier.log")

	async def send(self, event: NotificationEvent) -> None:
		lvl = _level_map.get(event.level, logging.INFO)
		self._logger.log(
			lvl,
			"monitor_id=%s name=%s change=%s->%s code=%s time_ms=%s error=%s ts=%s",
			event.monitor_id,
			event.monitor_name,
			status_text(event.previous_status),
			status_text(event.new_status),
			event.status_code,
			event.response_time_ms,
			event.error_message,
			event.ts.isoformat(),
		)
