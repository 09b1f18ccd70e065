from __future__ import annotations

import aiohttp

from .base import DeliveryError, Notifier
from .types import NotificationEvent, status_text


class TelegramNotifier(Notifier):
	def __init__(self, bot_token: str, chat_id: str, *, connect_timeout_s: float = 3.0, read_timeout_s: float = 5.0) -> None:
		self._bot_token = bot_token
		self._chat_id = chat_id
		self._timeout = aiohttp.ClientTimeout(connect=connect_timeout_s, total=connect_timeout_s + read_timeout_s)

	def render(self, event: NotificationEvent) -> str:
		lines = [
			event.title,
			f"{status_text(event.previous_status)} -> {status_text(event.new_status)}",
			event.url,
			f"code={event.status_code} time={event.response_time_ms}ms",
		]
		if event.error_message:
			lines.append(event.error_message)
		lines.append(event.ts.isoformat())
		# ограничение длины сообщения Telegram ~4096 символов
		return "\n".join(lines)[:4096]

	async def send(self, event: NotificationEvent) -> None:
		url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
		payload = {"chat_id": self._chat_id, "text": self.render(event)}
		async with aiohttp.ClientSession(timeout=self._timeout) as session:
			async with session.post(url, json=payload) as resp:
				if resp.status >= 400:
					raise DeliveryError(f"telegram responded with status {resp.status}")
