from __future__ import annotations

import aiohttp
from .base import DeliveryError, Notifier
from .types import NotificationEvent


class WebhookNotifier(Notifier):
	"""Отправка события смены статуса JSON-ом на заданный URL."""
	def __init__(self, url: str, *, connect_timeout_s: float = 3.0, read_timeout_s: float = 7.0) -> None:
		self._url = url
		self._timeout = aiohttp.ClientTimeout(connect=connect_timeout_s, total=connect_timeout_s + read_timeout_s)

	async def send(self, event: NotificationEvent) -> None:
		async with aiohttp.ClientSession(timeout=self._timeout) as s:
			async with s.post(self._url, json=event.to_payload()) as resp:
				if resp.status >= 400:
					raise DeliveryError(f"webhook responded with status {resp.status}")
