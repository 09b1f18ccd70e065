from datetime import datetime
from contextlib import asynccontextmanager
from typing import List, Literal, Optional
from urllib.parse import urlparse
import asyncio
import logging
import os

from fastapi import FastAPI, HTTPException, Path, Query, Request, status, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, PlainTextResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field, field_validator, model_validator

from uptimer.db import repo
from uptimer.db.init_db import main as init_db_main
from uptimer.logging_config import setup_logging
from uptimer.metrics import render_metrics
from uptimer.scheduler import Scheduler, from_env
from uptimer.security import api_key_auth, cron_auth
from uptimer.status_ranges import format_status_ranges, parse_status_ranges
from uptimer.types import MonitorConfig, ProbeResult, Resolution

logger = logging.getLogger(__name__)

PUBLIC_HEARTBEAT_LIMIT = 50


class ErrorResponse(BaseModel):
	code: str
	message: str


def _check_url(v: str) -> str:
	parsed = urlparse(v)
	if parsed.scheme not in ("http", "https") or not parsed.netloc:
		raise ValueError("url must start with http or https")
	return v


class MonitorCreate(BaseModel):
	name: str = Field(min_length=1, max_length=200)
	url: str
	kind: Literal["http", "https", "keyword"] = "http"
	interval_s: int = Field(300, ge=1)
	timeout_s: int = Field(10, ge=1, le=300)
	retry_count: int = Field(1, ge=1, le=10)
	accepted_statuses: str = "200-399"
	follow_redirects: bool = True
	max_redirects: int = Field(5, ge=0, le=20)
	keyword: Optional[str] = Field(None, max_length=512)
	keyword_case_sensitive: bool = False
	keyword_invert: bool = False
	verify_tls: bool = True
	cert_expiry_days: int = Field(7, ge=1, le=90)
	active: bool = True

	@field_validator("url")
	@classmethod
	def validate_url(cls, v: str) -> str:
		return _check_url(v)

	@field_validator("accepted_statuses")
	@classmethod
	def validate_statuses(cls, v: str) -> str:
		# диапазоны проверяются один раз при сохранении, а не на каждой проверке
		return format_status_ranges(parse_status_ranges(v))

	@model_validator(mode="after")
	def validate_kind(self) -> "MonitorCreate":
		if self.kind == "keyword" and not self.keyword:
			raise ValueError("keyword is required for keyword monitors")
		if self.kind == "https" and not self.url.startswith("https://"):
			raise ValueError("https monitors require an https url")
		return self


class MonitorUpdate(BaseModel):
	name: Optional[str] = Field(None, min_length=1, max_length=200)
	url: Optional[str] = None
	kind: Optional[Literal["http", "https", "keyword"]] = None
	interval_s: Optional[int] = Field(None, ge=1)
	timeout_s: Optional[int] = Field(None, ge=1, le=300)
	retry_count: Optional[int] = Field(None, ge=1, le=10)
	accepted_statuses: Optional[str] = None
	follow_redirects: Optional[bool] = None
	max_redirects: Optional[int] = Field(None, ge=0, le=20)
	keyword: Optional[str] = Field(None, max_length=512)
	keyword_case_sensitive: Optional[bool] = None
	keyword_invert: Optional[bool] = None
	verify_tls: Optional[bool] = None
	cert_expiry_days: Optional[int] = Field(None, ge=1, le=90)
	active: Optional[bool] = None

	@field_validator("url")
	@classmethod
	def validate_url(cls, v: Optional[str]) -> Optional[str]:
		if v is None:
			return v
		return _check_url(v)

	@field_validator("accepted_statuses")
	@classmethod
	def validate_statuses(cls, v: Optional[str]) -> Optional[str]:
		if v is None:
			return v
		return format_status_ranges(parse_status_ranges(v))


class MonitorOut(BaseModel):
	id: int
	name: str
	url: str
	kind: str
	interval_s: int
	timeout_s: int
	retry_count: int
	accepted_statuses: str
	follow_redirects: bool
	max_redirects: int
	keyword: Optional[str] = None
	keyword_case_sensitive: bool
	keyword_invert: bool
	verify_tls: bool
	cert_expiry_days: int
	active: bool
	is_up: Optional[bool] = None
	last_check_time: Optional[datetime] = None
	last_status_code: Optional[int] = None
	last_response_time: Optional[int] = None
	last_error: Optional[str] = None
	total_checks: int = 0
	total_successful_checks: int = 0


class ProbeResultOut(BaseModel):
	monitor_id: int
	status_code: int
	latency_ms: int
	is_up: bool
	error_type: Optional[str] = None
	error_message: Optional[str] = None
	redirect_count: int
	final_url: Optional[str] = None
	attempts: int


class PassSummaryOut(BaseModel):
	checked: int
	errors: int


class UptimeSummaryOut(BaseModel):
	uptime_24h: float
	uptime_30d: float
	uptime_1y: float
	avg_ping_24h: Optional[float] = None


class StatBucketOut(BaseModel):
	timestamp: int
	up_count: int
	down_count: int
	maintenance_count: int
	avg_ping: Optional[float] = None
	min_ping: Optional[int] = None
	max_ping: Optional[int] = None


class HeartbeatOut(BaseModel):
	ts: datetime
	status: int
	ping: Optional[int] = None
	message: Optional[str] = None


class SummaryOut(BaseModel):
	up: int = 0
	down: int = 0
	paused: int = 0
	total: int = 0


class PublicMonitorOut(BaseModel):
	id: int
	name: str
	url: str
	is_up: Optional[bool] = None
	last_check_time: Optional[datetime] = None
	heartbeats: List[HeartbeatOut]


_scheduler: Optional[Scheduler] = None


def get_scheduler() -> Scheduler:
	global _scheduler
	if _scheduler is None:
		_scheduler = from_env()
	return _scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
	setup_logging()
	# создание схемы best-effort: в проде схему ведёт alembic
	try:
		init_db_main()
	except Exception as e:
		logger.warning("schema init skipped: %s", e)
	task: Optional[asyncio.Task] = None
	if os.getenv("SCHEDULER_ENABLE", "true").lower() in ("1", "true", "yes"):
		task = asyncio.create_task(get_scheduler().run())
	yield
	if _scheduler is not None:
		_scheduler.stop()
		await _scheduler.drain_alerts()
	if task is not None:
		try:
			await asyncio.wait_for(task, timeout=5)
		except asyncio.TimeoutError:
			logger.warning("scheduler did not stop in time, cancelled")


app = FastAPI(title="Uptimer API", description="Мониторинг доступности и скользящая статистика", version="0.1.0", lifespan=lifespan)

app.add_middleware(
	CORSMiddleware,
	allow_origins=["*"],
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"]
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
	return JSONResponse(status_code=exc.status_code, content=ErrorResponse(code=str(exc.status_code), message=str(exc.detail)).model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
	return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=ErrorResponse(code="400", message="validation error").model_dump())


def _monitor_out(m: MonitorConfig, st=None) -> MonitorOut:
	return MonitorOut(
		id=m.id,
		name=m.name,
		url=m.url,
		kind=m.kind.value,
		interval_s=m.interval_s,
		timeout_s=m.timeout_s,
		retry_count=m.retry_count,
		accepted_statuses=format_status_ranges(m.accepted_statuses),
		follow_redirects=m.follow_redirects,
		max_redirects=m.max_redirects,
		keyword=m.keyword,
		keyword_case_sensitive=m.keyword_case_sensitive,
		keyword_invert=m.keyword_invert,
		verify_tls=m.verify_tls,
		cert_expiry_days=m.cert_expiry_days,
		active=m.active,
		is_up=(st.is_up if st is not None else None),
		last_check_time=repo.last_check_time(st),
		last_status_code=(st.last_status_code if st is not None else None),
		last_response_time=(st.last_response_time if st is not None else None),
		last_error=(st.last_error if st is not None else None),
		total_checks=(st.total_checks or 0) if st is not None else 0,
		total_successful_checks=(st.total_successful_checks or 0) if st is not None else 0,
	)


def _probe_out(r: ProbeResult) -> ProbeResultOut:
	return ProbeResultOut(
		monitor_id=r.monitor_id,
		status_code=r.status_code,
		latency_ms=r.latency_ms,
		is_up=r.is_up,
		error_type=(r.error_type.value if r.error_type else None),
		error_message=r.error_message,
		redirect_count=r.redirect_count,
		final_url=r.final_url,
		attempts=r.attempts,
	)


def _require_monitor(monitor_id: int) -> MonitorConfig:
	monitor = repo.get_monitor(monitor_id)
	if monitor is None:
		raise HTTPException(status_code=404, detail="monitor not found")
	return monitor


@app.get("/health")
def health():
	return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics_endpoint():
	payload, content_type = render_metrics()
	return PlainTextResponse(payload.decode("utf-8"), media_type=content_type)


@app.post("/cron/run-checks", response_model=PassSummaryOut, dependencies=[Depends(cron_auth)])
async def run_checks(scheduler: Scheduler = Depends(get_scheduler)):
	try:
		summary = await scheduler.run_scheduled_pass()
	except Exception as e:
		logger.exception("check pass aborted: %s", e)
		raise HTTPException(status_code=500, detail="failed to complete check cycle")
	return PassSummaryOut(checked=summary.checked, errors=summary.errors)


@app.post("/monitors", response_model=MonitorOut, status_code=status.HTTP_201_CREATED, dependencies=[Depends(api_key_auth)])
async def create_monitor(payload: MonitorCreate, scheduler: Scheduler = Depends(get_scheduler)):
	existing = [m for m in repo.list_monitors() if m.name.lower() == payload.name.lower()]
	if existing:
		raise HTTPException(status_code=409, detail="monitor name already exists")
	fields = payload.model_dump()
	monitor = repo.create_monitor(fields.pop("name"), fields.pop("url"), **fields)
	# сразу проверяем новый монитор
	try:
		await scheduler.check_now(monitor.id)
	except Exception as e:
		logger.error("initial check failed for monitor %s: %s", monitor.id, e)
	return _monitor_out(monitor, repo.get_status(monitor.id))


@app.get("/monitors", response_model=List[MonitorOut])
async def list_monitors():
	statuses = repo.list_statuses()
	return [_monitor_out(m, statuses.get(m.id)) for m in repo.list_monitors()]


@app.get("/monitors/{monitor_id}", response_model=MonitorOut)
async def get_monitor(monitor_id: int = Path(ge=1)):
	monitor = _require_monitor(monitor_id)
	return _monitor_out(monitor, repo.get_status(monitor_id))


@app.put("/monitors/{monitor_id}", response_model=MonitorOut, dependencies=[Depends(api_key_auth)])
async def update_monitor(payload: MonitorUpdate, monitor_id: int = Path(ge=1), scheduler: Scheduler = Depends(get_scheduler)):
	current = _require_monitor(monitor_id)
	fields = payload.model_dump(exclude_unset=True)
	if fields.get("name") is not None:
		clash = [m for m in repo.list_monitors() if m.id != monitor_id and m.name.lower() == fields["name"].lower()]
		if clash:
			raise HTTPException(status_code=409, detail="monitor name already exists")
	kind = fields.get("kind") or current.kind.value
	url = fields.get("url") or current.url
	keyword = fields["keyword"] if "keyword" in fields else current.keyword
	if kind == "keyword" and not keyword:
		raise HTTPException(status_code=400, detail="keyword is required for keyword monitors")
	if kind == "https" and not url.startswith("https://"):
		raise HTTPException(status_code=400, detail="https monitors require an https url")
	# явный null допустим только для keyword
	fields = {k: v for k, v in fields.items() if v is not None or k == "keyword"}
	monitor = repo.update_monitor(monitor_id, **fields)
	if monitor is None:
		raise HTTPException(status_code=404, detail="monitor not found")
	# накопленная статистика перечитывается из БД с новой конфигурацией
	scheduler.forget(monitor_id)
	return _monitor_out(monitor, repo.get_status(monitor_id))


@app.delete("/monitors/{monitor_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(api_key_auth)])
async def delete_monitor(monitor_id: int = Path(ge=1), scheduler: Scheduler = Depends(get_scheduler)):
	if not repo.delete_monitor(monitor_id):
		raise HTTPException(status_code=404, detail="monitor not found")
	scheduler.forget(monitor_id)
	return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/monitors/{monitor_id}/check", response_model=ProbeResultOut, dependencies=[Depends(api_key_auth)])
async def check_now(monitor_id: int = Path(ge=1), scheduler: Scheduler = Depends(get_scheduler)):
	try:
		result = await scheduler.check_now(monitor_id)
	except LookupError:
		raise HTTPException(status_code=404, detail="monitor not found")
	return _probe_out(result)


@app.get("/monitors/{monitor_id}/uptime", response_model=UptimeSummaryOut)
async def get_uptime(monitor_id: int = Path(ge=1), scheduler: Scheduler = Depends(get_scheduler)):
	_require_monitor(monitor_id)
	return UptimeSummaryOut(**scheduler.get_uptime_summary(monitor_id))


@app.get("/monitors/{monitor_id}/stats", response_model=List[StatBucketOut])
async def get_stats(
	monitor_id: int = Path(ge=1),
	periods: int = Query(60, ge=1),
	resolution: Resolution = Query(Resolution.MINUTE),
	scheduler: Scheduler = Depends(get_scheduler),
):
	_require_monitor(monitor_id)
	buckets = scheduler.get_time_series(monitor_id, periods, resolution)
	return [
		StatBucketOut(
			timestamp=b.timestamp,
			up_count=b.up_count,
			down_count=b.down_count,
			maintenance_count=b.maintenance_count,
			avg_ping=b.avg_ping,
			min_ping=b.min_ping,
			max_ping=b.max_ping,
		)
		for b in buckets
	]


@app.get("/monitors/{monitor_id}/heartbeats", response_model=List[HeartbeatOut])
async def get_heartbeats(monitor_id: int = Path(ge=1), limit: int = Query(100, ge=1, le=1000)):
	_require_monitor(monitor_id)
	# для полосы heartbeat нужен порядок от старых к новым
	return [HeartbeatOut(**h) for h in reversed(repo.get_heartbeats(monitor_id, limit))]


@app.get("/monitors/{monitor_id}/events", response_model=List[HeartbeatOut])
async def get_events(monitor_id: int = Path(ge=1), limit: int = Query(50, ge=1, le=1000)):
	_require_monitor(monitor_id)
	return [HeartbeatOut(**h) for h in repo.get_status_changes(monitor_id, limit)]


@app.get("/status", response_model=List[PublicMonitorOut])
async def public_status():
	statuses = repo.list_statuses()
	out: List[PublicMonitorOut] = []
	for m in repo.list_monitors():
		st = statuses.get(m.id)
		try:
			beats = [HeartbeatOut(**h) for h in reversed(repo.get_heartbeats(m.id, PUBLIC_HEARTBEAT_LIMIT))]
		except Exception as e:
			# страница статуса показывает последнее известное состояние даже без истории
			logger.error("failed to load heartbeats for public monitor %s: %s", m.id, e)
			beats = []
		out.append(PublicMonitorOut(
			id=m.id,
			name=m.name,
			url=m.url,
			is_up=(st.is_up if st is not None else None),
			last_check_time=repo.last_check_time(st),
			heartbeats=beats,
		))
	return out


@app.get("/summary", response_model=SummaryOut)
async def summary():
	"""Сводка для дашборда: неактивные считаются на паузе, непроверенные как down."""
	statuses = repo.list_statuses()
	out = SummaryOut()
	for m in repo.list_monitors():
		st = statuses.get(m.id)
		if not m.active:
			out.paused += 1
		elif st is not None and st.is_up:
			out.up += 1
		else:
			out.down += 1
		out.total += 1
	return out
