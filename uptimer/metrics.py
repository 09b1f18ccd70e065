from __future__ import annotations

from typing import Optional

from prometheus_client import Counter, Histogram, CONTENT_TYPE_LATEST, generate_latest

# Глобальный реестр метрик (используется по умолчанию)

checks_total = Counter(
	"uptimer_checks_total",
	"Общее количество проверок мониторов",
	labelnames=("monitor_id", "outcome", "error_type"),
)

latency_ms = Histogram(
	"uptimer_latency_ms",
	"Время ответа проверки в миллисекундах",
	buckets=(50, 100, 200, 300, 500, 750, 1000, 1500, 2000, 3000, 5000, 10000),
	labelnames=("monitor_id",),
)

pass_duration_seconds = Histogram(
	"uptimer_pass_duration_seconds",
	"Длительность одного прохода планировщика",
	buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)

persistence_errors_total = Counter(
	"uptimer_persistence_errors_total",
	"Ошибки записи статистики и heartbeat",
)

alerts_total = Counter(
	"uptimer_alerts_total",
	"Сработавшие оповещения о смене статуса",
	labelnames=("transition",),
)


def record_check(monitor_id: int, *, ok: bool, error_type: Optional[str], latency_value_ms: Optional[int]) -> None:
	"""Записать метрики Prometheus для одной проверки."""
	checks_total.labels(monitor_id=str(monitor_id), outcome=("success" if ok else "failure"), error_type=(error_type or "none")).inc()
	if ok and latency_value_ms is not None:
		latency_ms.labels(monitor_id=str(monitor_id)).observe(max(0.0, float(latency_value_ms)))


def record_alert(is_up: bool) -> None:
	alerts_total.labels(transition=("recovered" if is_up else "down")).inc()


def render_metrics() -> tuple[bytes, str]:
	"""Вернуть полезную нагрузку метрик и тип контента для FastAPI-роута."""
	return generate_latest(), CONTENT_TYPE_LATEST
