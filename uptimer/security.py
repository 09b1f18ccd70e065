from __future__ import annotations

import os
import secrets
from fastapi import Header, HTTPException, status


async def api_key_auth(x_api_key: str | None = Header(default=None)) -> None:
	"""Необязательная аутентификация по API-ключу. Если в окружении задан API_KEY,
	требует совпадения заголовка X-API-KEY для изменяющих эндпоинтов.
	"""
	required = os.getenv("API_KEY")
	if not required:
		return
	if not x_api_key or not secrets.compare_digest(x_api_key, required):
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid api key")


async def cron_auth(authorization: str | None = Header(default=None)) -> None:
	"""Внешний триггер прохода: при заданном CRON_SECRET ждём заголовок 'Bearer <secret>'."""
	secret = os.getenv("CRON_SECRET")
	if not secret:
		return
	if not authorization or not secrets.compare_digest(authorization, f"Bearer {secret}"):
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid cron secret")
