from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from .status_ranges import DEFAULT_STATUS_RANGES, StatusRange


class MonitorKind(str, enum.Enum):
	HTTP = "http"
	HTTPS = "https"
	KEYWORD = "keyword"


class FailureCategory(str, enum.Enum):
	TIMEOUT = "TIMEOUT"
	DNS_ERROR = "DNS_ERROR"
	CONNECTION_ERROR = "CONNECTION_ERROR"
	REQUEST_ERROR = "REQUEST_ERROR"
	STATUS_ERROR = "STATUS_ERROR"
	KEYWORD_MISMATCH = "KEYWORD_MISMATCH"
	SSL_INVALID = "SSL_INVALID"
	SSL_EXPIRING = "SSL_EXPIRING"
	SSL_ERROR = "SSL_ERROR"
	PERSISTENCE_ERROR = "PERSISTENCE_ERROR"


# Коды-заглушки для проверок, не получивших HTTP-ответа
SENTINEL_CODES: dict[FailureCategory, int] = {
	FailureCategory.TIMEOUT: -1,
	FailureCategory.DNS_ERROR: -2,
	FailureCategory.CONNECTION_ERROR: -3,
	FailureCategory.REQUEST_ERROR: -4,
	FailureCategory.SSL_ERROR: -5,
}


class HeartbeatStatus(enum.IntEnum):
	DOWN = 0
	UP = 1
	PENDING = 2
	MAINTENANCE = 3


class Resolution(str, enum.Enum):
	"""Гранулярность агрегации: длина периода, ёмкость кэша и горизонт хранения связаны."""
	MINUTE = "minute"
	HOUR = "hour"
	DAY = "day"

	@property
	def period_seconds(self) -> int:
		return _PERIOD_SECONDS[self]

	@property
	def capacity(self) -> int:
		return _CAPACITY[self]

	@property
	def retention(self) -> timedelta:
		return timedelta(seconds=self.period_seconds * self.capacity)


_PERIOD_SECONDS = {Resolution.MINUTE: 60, Resolution.HOUR: 3600, Resolution.DAY: 86400}
# 24 часа минутных, 30 дней часовых, 365 дней дневных корзин
_CAPACITY = {Resolution.MINUTE: 24 * 60, Resolution.HOUR: 30 * 24, Resolution.DAY: 365}


@dataclass(frozen=True)
class MonitorConfig:
	id: int
	name: str
	url: str
	kind: MonitorKind = MonitorKind.HTTP
	interval_s: int = 300
	timeout_s: int = 10
	retry_count: int = 1
	accepted_statuses: tuple[StatusRange, ...] = DEFAULT_STATUS_RANGES
	follow_redirects: bool = True
	max_redirects: int = 5
	keyword: Optional[str] = None
	keyword_case_sensitive: bool = False
	keyword_invert: bool = False
	verify_tls: bool = True
	cert_expiry_days: int = 7
	active: bool = True


@dataclass(frozen=True)
class ProbeResult:
	monitor_id: int
	status_code: int
	latency_ms: int
	is_up: bool
	error_type: Optional[FailureCategory] = None
	error_message: Optional[str] = None
	redirect_count: int = 0
	final_url: Optional[str] = None
	attempts: int = 1

	def heartbeat_message(self) -> str:
		if self.error_message:
			return self.error_message
		return f"OK ({self.status_code})" if self.is_up else f"Error ({self.status_code})"


@dataclass(frozen=True)
class Heartbeat:
	monitor_id: int
	status: HeartbeatStatus
	ping: Optional[int] = None
	message: Optional[str] = None
	ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

	@classmethod
	def from_result(cls, result: ProbeResult, ts: Optional[datetime] = None) -> "Heartbeat":
		return cls(
			monitor_id=result.monitor_id,
			status=HeartbeatStatus.UP if result.is_up else HeartbeatStatus.DOWN,
			ping=result.latency_ms if result.is_up else None,
			message=result.heartbeat_message(),
			ts=ts or datetime.now(timezone.utc),
		)


@dataclass
class StatBucket:
	"""Агрегат одной корзины. avg/min/max имеют смысл только при ping_count > 0."""
	timestamp: int = 0
	up_count: int = 0
	down_count: int = 0
	maintenance_count: int = 0
	avg_ping: Optional[float] = None
	min_ping: Optional[int] = None
	max_ping: Optional[int] = None
	ping_count: int = 0

	def add_ping(self, ping: int) -> None:
		if self.ping_count == 0 or self.avg_ping is None:
			self.avg_ping = float(ping)
			self.min_ping = ping
			self.max_ping = ping
		else:
			self.avg_ping = (self.avg_ping * self.ping_count + ping) / (self.ping_count + 1)
			self.min_ping = ping if self.min_ping is None else min(self.min_ping, ping)
			self.max_ping = ping if self.max_ping is None else max(self.max_ping, ping)
		self.ping_count += 1

	def copy(self, timestamp: Optional[int] = None) -> "StatBucket":
		return StatBucket(
			timestamp=self.timestamp if timestamp is None else timestamp,
			up_count=self.up_count,
			down_count=self.down_count,
			maintenance_count=self.maintenance_count,
			avg_ping=self.avg_ping,
			min_ping=self.min_ping,
			max_ping=self.max_ping,
			ping_count=self.ping_count,
		)


@dataclass(frozen=True)
class UptimeData:
	uptime: float
	avg_ping: Optional[float]


@dataclass(frozen=True)
class PassSummary:
	checked: int = 0
	errors: int = 0
