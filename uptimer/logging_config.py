from __future__ import annotations

import json
import logging
import os
from typing import Any

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
# контекст проверки, передаваемый через extra=
_CONTEXT_FIELDS = ("monitor_id", "error_type")


class JsonFormatter(logging.Formatter):
	def format(self, record: logging.LogRecord) -> str:
		payload: dict[str, Any] = {
			"time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
			"level": record.levelname,
			"logger": record.name,
			"msg": record.getMessage(),
		}
		for name in _CONTEXT_FIELDS:
			value = getattr(record, name, None)
			if value is not None:
				payload[name] = value
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging() -> None:
	"""Уровень из LOG_LEVEL, JSON-вывод при LOG_JSON=true."""
	root = logging.getLogger()
	root.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
	use_json = os.getenv("LOG_JSON", "false").lower() in ("1", "true", "yes")
	for h in list(root.handlers):
		root.removeHandler(h)
	handler = logging.StreamHandler()
	handler.setFormatter(JsonFormatter() if use_json else logging.Formatter(_TEXT_FORMAT))
	root.addHandler(handler)
	# библиотеки HTTP и БД слишком многословны на INFO
	for noisy in ("aiohttp", "sqlalchemy.engine"):
		logging.getLogger(noisy).setLevel(logging.WARNING)
