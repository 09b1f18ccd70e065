from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import case, delete, select
from sqlalchemy.orm import Session

from ..status_ranges import format_status_ranges, parse_status_ranges
from ..types import Heartbeat as HeartbeatData, MonitorConfig, MonitorKind, Resolution, StatBucket
from .models import (
    SessionLocal,
    Monitor,
    MonitorStatus,
    Heartbeat,
    StatMinutely,
    StatHourly,
    StatDaily,
    MSG_MAX_LEN,
)

STAT_MODELS = {
    Resolution.MINUTE: StatMinutely,
    Resolution.HOUR: StatHourly,
    Resolution.DAY: StatDaily,
}


def _ensure_utc(ts: datetime) -> datetime:
    """Гарантировать, что datetime имеет таймзону UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    elif ts.tzinfo != timezone.utc:
        return ts.astimezone(timezone.utc)
    else:
        return ts


def _truncate(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return text[:MSG_MAX_LEN] if len(text) > MSG_MAX_LEN else text


def _insert_for(session: Session):
    """INSERT с поддержкой ON CONFLICT для текущего диалекта."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"upsert is not supported for dialect {dialect}")
    return insert


def _to_config(m: Monitor) -> MonitorConfig:
    return MonitorConfig(
        id=m.id,
        name=m.name,
        url=m.url,
        kind=MonitorKind(m.kind),
        interval_s=m.interval_s,
        timeout_s=m.timeout_s,
        retry_count=m.retry_count,
        accepted_statuses=parse_status_ranges(m.accepted_statuses),
        follow_redirects=bool(m.follow_redirects),
        max_redirects=m.max_redirects,
        keyword=m.keyword,
        keyword_case_sensitive=bool(m.keyword_case_sensitive),
        keyword_invert=bool(m.keyword_invert),
        verify_tls=bool(m.verify_tls),
        cert_expiry_days=m.cert_expiry_days,
        active=bool(m.active),
    )


def _to_bucket(row) -> StatBucket:
    return StatBucket(
        timestamp=int(row.bucket_ts),
        up_count=row.up_count or 0,
        down_count=row.down_count or 0,
        maintenance_count=row.maintenance_count or 0,
        avg_ping=row.avg_ping,
        min_ping=row.min_ping,
        max_ping=row.max_ping,
        ping_count=row.ping_count or 0,
    )


# --- мониторы ---

def create_monitor(name: str, url: str, **fields) -> MonitorConfig:
    """Создать монитор вместе с пустой строкой текущего состояния."""
    ranges = fields.pop("accepted_statuses", None)
    if not isinstance(ranges, str):
        ranges = format_status_ranges(ranges) if ranges else None
    kind = fields.pop("kind", MonitorKind.HTTP)
    with SessionLocal() as session:
        monitor = Monitor(
            name=name,
            url=url,
            kind=MonitorKind(kind).value,
            accepted_statuses=format_status_ranges(parse_status_ranges(ranges)),
            **fields,
        )
        monitor.status = MonitorStatus(total_checks=0, total_successful_checks=0)
        session.add(monitor)
        session.commit()
        return _to_config(monitor)


def update_monitor(monitor_id: int, **fields) -> Optional[MonitorConfig]:
    """Изменить поля монитора. Возвращает None, если монитора нет."""
    if "accepted_statuses" in fields:
        ranges = fields["accepted_statuses"]
        if not isinstance(ranges, str):
            ranges = format_status_ranges(ranges) if ranges else None
        fields["accepted_statuses"] = format_status_ranges(parse_status_ranges(ranges))
    if "kind" in fields:
        fields["kind"] = MonitorKind(fields["kind"]).value
    with SessionLocal() as session:
        monitor = session.get(Monitor, monitor_id)
        if monitor is None:
            return None
        for key, value in fields.items():
            setattr(monitor, key, value)
        session.commit()
        return _to_config(monitor)


def delete_monitor(monitor_id: int) -> bool:
    """Удалить монитор по ID вместе со связанными записями (через каскад)."""
    with SessionLocal() as session:
        monitor = session.get(Monitor, monitor_id)
        if monitor is None:
            return False
        session.delete(monitor)
        session.commit()
        return True


def list_monitors() -> list[MonitorConfig]:
    with SessionLocal() as session:
        rows = session.scalars(select(Monitor).order_by(Monitor.id)).all()
        return [_to_config(m) for m in rows]


def get_monitor(monitor_id: int) -> Optional[MonitorConfig]:
    with SessionLocal() as session:
        monitor = session.get(Monitor, monitor_id)
        return _to_config(monitor) if monitor is not None else None


# --- текущее состояние ---

def get_status(monitor_id: int) -> Optional[MonitorStatus]:
    with SessionLocal() as session:
        return session.get(MonitorStatus, monitor_id)


def list_statuses() -> dict[int, MonitorStatus]:
    with SessionLocal() as session:
        return {s.monitor_id: s for s in session.scalars(select(MonitorStatus)).all()}


def last_check_time(status: Optional[MonitorStatus]) -> Optional[datetime]:
    if status is None or status.last_check_time is None:
        return None
    return _ensure_utc(status.last_check_time)


def upsert_status(
    monitor_id: int,
    *,
    checked_at: datetime,
    status_code: Optional[int],
    response_time: Optional[int],
    is_up: bool,
    error: Optional[str],
) -> None:
    """Перезаписать текущее состояние и накопить счётчики проверок."""
    with SessionLocal() as session:
        insert = _insert_for(session)
        table = MonitorStatus.__table__
        stmt = insert(table).values(
            monitor_id=monitor_id,
            last_check_time=_ensure_utc(checked_at),
            last_status_code=status_code,
            last_response_time=response_time,
            is_up=is_up,
            last_error=_truncate(error),
            total_checks=1,
            total_successful_checks=1 if is_up else 0,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.monitor_id],
            set_={
                "last_check_time": stmt.excluded.last_check_time,
                "last_status_code": stmt.excluded.last_status_code,
                "last_response_time": stmt.excluded.last_response_time,
                "is_up": stmt.excluded.is_up,
                "last_error": stmt.excluded.last_error,
                "total_checks": table.c.total_checks + 1,
                "total_successful_checks": table.c.total_successful_checks
                + stmt.excluded.total_successful_checks,
            },
        )
        session.execute(stmt)
        session.commit()


# --- статистика и heartbeat ---

def _upsert_bucket(session: Session, resolution: Resolution, monitor_id: int, delta: StatBucket) -> None:
    """Прибавить дельту к корзине; среднее пинга сливается с весом ping_count."""
    insert = _insert_for(session)
    table = STAT_MODELS[resolution].__table__
    now = datetime.now(timezone.utc)
    stmt = insert(table).values(
        monitor_id=monitor_id,
        bucket_ts=delta.timestamp,
        up_count=delta.up_count,
        down_count=delta.down_count,
        maintenance_count=delta.maintenance_count,
        avg_ping=delta.avg_ping,
        min_ping=delta.min_ping,
        max_ping=delta.max_ping,
        ping_count=delta.ping_count,
        updated_at=now,
    )
    ex = stmt.excluded
    c = table.c
    stmt = stmt.on_conflict_do_update(
        index_elements=[c.monitor_id, c.bucket_ts],
        set_={
            "up_count": c.up_count + ex.up_count,
            "down_count": c.down_count + ex.down_count,
            "maintenance_count": c.maintenance_count + ex.maintenance_count,
            "avg_ping": case(
                (ex.ping_count == 0, c.avg_ping),
                (c.ping_count == 0, ex.avg_ping),
                else_=(c.avg_ping * c.ping_count + ex.avg_ping * ex.ping_count)
                / (c.ping_count + ex.ping_count),
            ),
            "min_ping": case(
                (c.min_ping.is_(None), ex.min_ping),
                (ex.min_ping.is_(None), c.min_ping),
                (ex.min_ping < c.min_ping, ex.min_ping),
                else_=c.min_ping,
            ),
            "max_ping": case(
                (c.max_ping.is_(None), ex.max_ping),
                (ex.max_ping.is_(None), c.max_ping),
                (ex.max_ping > c.max_ping, ex.max_ping),
                else_=c.max_ping,
            ),
            "ping_count": c.ping_count + ex.ping_count,
            "updated_at": ex.updated_at,
        },
    )
    session.execute(stmt)


def record_heartbeat(heartbeat: HeartbeatData, deltas: dict[Resolution, StatBucket]) -> None:
    """Одной транзакцией: upsert минутной/часовой/дневной корзин и вставка heartbeat.

    Любая ошибка откатывает всю транзакцию и пробрасывается вызывающему.
    """
    with SessionLocal() as session:
        try:
            for resolution, delta in deltas.items():
                _upsert_bucket(session, resolution, heartbeat.monitor_id, delta)
            session.add(
                Heartbeat(
                    monitor_id=heartbeat.monitor_id,
                    ts=_ensure_utc(heartbeat.ts),
                    status=int(heartbeat.status),
                    ping=heartbeat.ping,
                    message=_truncate(heartbeat.message),
                )
            )
            session.commit()
        except Exception:
            session.rollback()
            raise


def query_buckets(resolution: Resolution, monitor_id: int, since_ts: int) -> list[StatBucket]:
    """Корзины новее since_ts (исключительно), от старых к новым."""
    model = STAT_MODELS[resolution]
    with SessionLocal() as session:
        rows = session.scalars(
            select(model)
            .where(model.monitor_id == monitor_id, model.bucket_ts > since_ts)
            .order_by(model.bucket_ts.asc())
        ).all()
        return [_to_bucket(r) for r in rows]


def delete_buckets_before(resolution: Resolution, cutoff_ts: int) -> int:
    model = STAT_MODELS[resolution]
    with SessionLocal() as session:
        result = session.execute(delete(model).where(model.bucket_ts < cutoff_ts))
        session.commit()
        return result.rowcount or 0


def delete_heartbeats_before(cutoff: datetime) -> int:
    with SessionLocal() as session:
        result = session.execute(delete(Heartbeat).where(Heartbeat.ts < _ensure_utc(cutoff)))
        session.commit()
        return result.rowcount or 0


def _heartbeat_dict(h: Heartbeat) -> dict:
    return {
        "id": h.id,
        "ts": _ensure_utc(h.ts),
        "status": h.status,
        "ping": h.ping,
        "message": h.message,
    }


def get_heartbeats(monitor_id: int, limit: int) -> list[dict]:
    """Последние heartbeat монитора (сначала самые новые)."""
    with SessionLocal() as session:
        rows = session.scalars(
            select(Heartbeat)
            .where(Heartbeat.monitor_id == monitor_id)
            .order_by(Heartbeat.ts.desc(), Heartbeat.id.desc())
            .limit(limit)
        ).all()
        return [_heartbeat_dict(h) for h in rows]


def get_status_changes(monitor_id: int, limit: int) -> list[dict]:
    """Heartbeat, на которых менялся статус (первый включается всегда), сначала новые."""
    with SessionLocal() as session:
        rows = session.scalars(
            select(Heartbeat)
            .where(Heartbeat.monitor_id == monitor_id)
            .order_by(Heartbeat.ts.asc(), Heartbeat.id.asc())
        ).all()
    events: list[dict] = []
    previous: Optional[int] = None
    for h in rows:
        if previous is None or h.status != previous:
            events.append(_heartbeat_dict(h))
        previous = h.status
    return list(reversed(events[-limit:])) if limit > 0 else []
