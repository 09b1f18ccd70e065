from __future__ import annotations

import abc
import logging
from typing import Iterable

from .types import NotificationEvent

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
	"""Канал не смог доставить уведомление."""


class Notifier(abc.ABC):
	@abc.abstractmethod
	async def send(self, event: NotificationEvent) -> None:
		...


class CompositeNotifier(Notifier):
	def __init__(self, channels: Iterable[Notifier]):
		self._channels = list(channels)

	@property
	def channels(self) -> list[Notifier]:
		return list(self._channels)

	async def send(self, event: NotificationEvent) -> None:
		# отказ одного канала не мешает остальным; повторов нет
		for ch in self._channels:
			try:
				await ch.send(event)
			except Exception as e:
				logger.warning("notification via %s failed for monitor %s: %s", type(ch).__name__, event.monitor_id, e)
