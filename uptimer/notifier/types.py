from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def status_text(is_up: Optional[bool]) -> str:
	if is_up is None:
		return "UNKNOWN"
	return "UP" if is_up else "DOWN"


@dataclass(frozen=True)
class NotificationEvent:
	monitor_id: int
	monitor_name: str
	url: str
	previous_status: Optional[bool]
	new_status: bool
	status_code: Optional[int]
	response_time_ms: Optional[int]
	error_message: Optional[str] = None
	ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

	@property
	def level(self) -> str:
		return "info" if self.new_status else "error"

	@property
	def title(self) -> str:
		return f"{self.monitor_name} is {status_text(self.new_status)}"

	def to_payload(self) -> dict[str, Any]:
		return {
			"monitor": {"id": self.monitor_id, "name": self.monitor_name, "url": self.url},
			"status_change": {"from": status_text(self.previous_status), "to": status_text(self.new_status)},
			"check_result": {
				"status_code": self.status_code,
				"response_time_ms": self.response_time_ms,
				"is_up": self.new_status,
				"error": self.error_message,
			},
			"timestamp": self.ts.isoformat(),
		}
