from __future__ import annotations

import os
from typing import List, Mapping, Optional

from .base import CompositeNotifier, Notifier
from .log import LogNotifier
from .telegram import TelegramNotifier
from .webhook import WebhookNotifier


def _split_urls(raw: Optional[str]) -> List[str]:
	return [u.strip() for u in (raw or "").split(",") if u.strip()]


def build_notifier_from_env(env: Optional[Mapping[str, str]] = None) -> CompositeNotifier:
	"""Каналы оповещений о смене статуса.

	Лог пишется всегда. Telegram включается парой TELEGRAM_BOT_TOKEN и
	TELEGRAM_CHAT_ID, вебхуки берутся из WEBHOOK_URL (несколько URL через запятую).
	"""
	env = os.environ if env is None else env
	channels: List[Notifier] = [LogNotifier()]
	bot, chat = env.get("TELEGRAM_BOT_TOKEN"), env.get("TELEGRAM_CHAT_ID")
	if bot and chat:
		channels.append(TelegramNotifier(bot, chat))
	channels.extend(WebhookNotifier(url) for url in _split_urls(env.get("WEBHOOK_URL")))
	return CompositeNotifier(channels)
