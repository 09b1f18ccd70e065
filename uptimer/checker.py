import asyncio
import aiohttp
import logging
import os
import socket
import ssl

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Type
from time import perf_counter
from types import TracebackType
from yarl import URL

from .status_ranges import is_status_accepted
from .types import SENTINEL_CODES, FailureCategory, MonitorConfig, MonitorKind, ProbeResult

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = os.getenv("HTTP_USER_AGENT", "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Uptimer/1.0")
ERR_MAX_LEN = 512
# keyword ищется только в первых KEYWORD_BODY_LIMIT байтах ответа
KEYWORD_BODY_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class CertificateInfo:
    not_after: datetime
    subject: Optional[str] = None
    issuer: Optional[str] = None

    def days_until_expiration(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        return (self.not_after - now).days


def _common_name(rdns) -> Optional[str]:
    for rdn in rdns or ():
        for key, value in rdn:
            if key == "commonName":
                return value
    return None


def classify_certificate(cert: CertificateInfo, threshold_days: int,
                         now: Optional[datetime] = None) -> tuple[Optional[FailureCategory], Optional[str]]:
    """Сертификат валиден; проверяем только запас до истечения."""
    days = cert.days_until_expiration(now)
    if days <= threshold_days:
        return FailureCategory.SSL_EXPIRING, f"Certificate expires in {days} days"
    return None, None


def classify_exception(exc: BaseException) -> tuple[FailureCategory, str]:
    """Отнести исключение запроса к категории отказа."""
    if isinstance(exc, asyncio.TimeoutError):
        return FailureCategory.TIMEOUT, "Request timed out"
    if isinstance(exc, (aiohttp.ClientSSLError, ssl.SSLError)):
        return FailureCategory.SSL_ERROR, (str(exc) or "SSL error")[:ERR_MAX_LEN]
    if isinstance(exc, aiohttp.ClientConnectorError):
        if isinstance(exc.os_error, socket.gaierror):
            return FailureCategory.DNS_ERROR, "DNS lookup failed"
        return FailureCategory.CONNECTION_ERROR, (str(exc) or "Connection failed")[:ERR_MAX_LEN]
    if isinstance(exc, socket.gaierror):
        return FailureCategory.DNS_ERROR, "DNS lookup failed"
    if isinstance(exc, (aiohttp.ServerDisconnectedError, aiohttp.ClientOSError, ConnectionError)):
        return FailureCategory.CONNECTION_ERROR, (str(exc) or "Connection failed")[:ERR_MAX_LEN]
    return FailureCategory.REQUEST_ERROR, f"Request setup error: {exc}"[:ERR_MAX_LEN]


def _is_certificate_rejection(exc: BaseException) -> bool:
    if isinstance(exc, aiohttp.ClientConnectorCertificateError):
        return True
    return isinstance(exc, ssl.SSLCertVerificationError)


def _sentinel_code(category: FailureCategory) -> int:
    if category == FailureCategory.SSL_INVALID:
        return SENTINEL_CODES[FailureCategory.SSL_ERROR]
    return SENTINEL_CODES.get(category, SENTINEL_CODES[FailureCategory.REQUEST_ERROR])


async def _read_body(response: aiohttp.ClientResponse, limit: int) -> str:
    """Прочитать не больше limit байт тела и декодировать без исключений."""
    chunks: list[bytes] = []
    size = 0
    while size < limit:
        chunk = await response.content.read(limit - size)
        if not chunk:
            break
        chunks.append(chunk)
        size += len(chunk)
    raw = b"".join(chunks)
    try:
        return raw.decode(response.charset or "utf-8", errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


class URLChecker:
    def __init__(self, max_concurrent: int = 5,
                retry_delay_s: float = 1.0,
                user_agent: str = DEFAULT_USER_AGENT):
        if (not isinstance(max_concurrent, int) or max_concurrent < 1):
            raise ValueError("max_concurrent должен быть целым числом >= 1")
        if retry_delay_s < 0:
            raise ValueError("retry_delay_s должен быть >= 0")

        self._max_concurrent = max_concurrent
        self._retry_delay_s = retry_delay_s
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._user_agent = user_agent

    async def __aenter__(self):
        self._semaphore = asyncio.Semaphore(self._max_concurrent)
        # Сессия без дефолтного таймаута, таймаут задаётся на каждый запрос
        self._session = aiohttp.ClientSession(headers={"User-Agent": self._user_agent})
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType]
    ) -> None:
        if self._session:
            try:
                await self._session.close()
            except Exception as e:
                logger.warning(f"Failed to close session: {e}")
        self._semaphore = None
        self._session = None

    # Переводим в миллисекунды задержку
    def calculate_latency_ms(self, start_time: float) -> int:
        return int((perf_counter() - start_time) * 1000)

    async def probe(self, monitor: MonitorConfig) -> ProbeResult:
        """Проверить монитор с ретраями.

        Останавливаемся на первой успешной попытке; если успешных нет,
        возвращается результат последней попытки.
        """
        if (self._semaphore is None or self._session is None):
            raise RuntimeError("URLChecker должен использоваться внутри 'async with' блока")

        max_attempts = max(1, monitor.retry_count)
        attempt = 1
        while True:
            async with self._semaphore:
                result = await self._attempt(monitor, attempt)
            if result.is_up or attempt >= max_attempts:
                return result
            logger.debug(
                "monitor %s attempt %s/%s failed: %s %s",
                monitor.id, attempt, max_attempts, result.error_type, result.error_message,
            )
            # фиксированная пауза между попытками, без экспоненты
            if self._retry_delay_s > 0:
                await asyncio.sleep(self._retry_delay_s)
            attempt += 1

    async def _attempt(self, monitor: MonitorConfig, attempt: int) -> ProbeResult:
        timeout = aiohttp.ClientTimeout(total=monitor.timeout_s)
        start_in = perf_counter()
        try:
            async with self._session.get(
                monitor.url,
                timeout=timeout,
                allow_redirects=monitor.follow_redirects,
                max_redirects=max(0, monitor.max_redirects),
                ssl=True if monitor.verify_tls else False,
            ) as response:
                status_code = response.status
                redirect_count = len(response.history)
                final_url = str(response.url)
                error_type: Optional[FailureCategory] = None
                error_text: Optional[str] = None
                if not is_status_accepted(status_code, monitor.accepted_statuses):
                    error_type = FailureCategory.STATUS_ERROR
                    error_text = f"Server responded with status: {status_code}"
                elif monitor.kind == MonitorKind.KEYWORD:
                    body = await _read_body(response, KEYWORD_BODY_LIMIT)
                    if not self._keyword_matches(monitor, body):
                        error_type = FailureCategory.KEYWORD_MISMATCH
                        error_text = self._keyword_message(monitor)
                latency_ms = self.calculate_latency_ms(start_in)
        except Exception as e:
            # probe никогда не пробрасывает сетевые ошибки наружу
            category, message = classify_exception(e)
            if monitor.kind == MonitorKind.HTTPS and _is_certificate_rejection(e):
                # для https-монитора отвергнутый сертификат это отдельная категория
                category = FailureCategory.SSL_INVALID
                message = f"Invalid certificate: {message}"[:ERR_MAX_LEN]
            return ProbeResult(
                monitor_id=monitor.id,
                status_code=_sentinel_code(category),
                latency_ms=self.calculate_latency_ms(start_in),
                is_up=False,
                error_type=category,
                error_message=message,
                attempts=attempt,
            )

        if error_type is None and monitor.kind == MonitorKind.HTTPS and monitor.verify_tls:
            error_type, error_text = await self._check_certificate(monitor)

        return ProbeResult(
            monitor_id=monitor.id,
            status_code=status_code,
            latency_ms=latency_ms,
            is_up=error_type is None,
            error_type=error_type,
            error_message=error_text,
            redirect_count=redirect_count,
            final_url=final_url,
            attempts=attempt,
        )

    @staticmethod
    def _keyword_matches(monitor: MonitorConfig, body: str) -> bool:
        needle = monitor.keyword or ""
        if monitor.keyword_case_sensitive:
            found = needle in body
        else:
            found = needle.lower() in body.lower()
        return found == (not monitor.keyword_invert)

    @staticmethod
    def _keyword_message(monitor: MonitorConfig) -> str:
        if monitor.keyword_invert:
            return f"Keyword '{monitor.keyword}' found but expected to be absent"
        return f"Keyword '{monitor.keyword}' not found"

    async def _check_certificate(self, monitor: MonitorConfig) -> tuple[Optional[FailureCategory], Optional[str]]:
        url = URL(monitor.url)
        host = url.host or ""
        port = url.port if url.scheme == "https" and url.port else 443
        try:
            cert = await self._inspect_certificate(host, port, monitor.timeout_s)
        except ssl.SSLCertVerificationError as e:
            return FailureCategory.SSL_INVALID, f"Invalid certificate: {getattr(e, 'verify_message', None) or e}"[:ERR_MAX_LEN]
        except (asyncio.TimeoutError, OSError, ValueError) as e:
            return FailureCategory.SSL_ERROR, f"TLS inspection failed: {e}"[:ERR_MAX_LEN]
        return classify_certificate(cert, monitor.cert_expiry_days)

    async def _inspect_certificate(self, host: str, port: int, timeout_s: int) -> CertificateInfo:
        """Открыть отдельное TLS-соединение и прочитать сертификат сервера (с проверкой цепочки)."""
        ctx = ssl.create_default_context()
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=ctx, server_hostname=host),
            timeout=timeout_s,
        )
        try:
            cert = writer.get_extra_info("peercert") or {}
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, ssl.SSLError) as e:
                logger.debug("TLS close for %s:%s failed: %s", host, port, e)
        if "notAfter" not in cert:
            raise ValueError("server did not present a certificate")
        not_after = datetime.fromtimestamp(ssl.cert_time_to_seconds(cert["notAfter"]), tz=timezone.utc)
        return CertificateInfo(
            not_after=not_after,
            subject=_common_name(cert.get("subject")),
            issuer=_common_name(cert.get("issuer")),
        )


async def probe_monitor(monitor: MonitorConfig, checker: URLChecker) -> ProbeResult:
    # Улучшенная валидация URL
    url = monitor.url
    if (not isinstance(url, str)
        or not url.strip()
        or not url.startswith(("http://", "https://"))):
        logger.error(f"Неправильный URL формат: {url}")
        return ProbeResult(
            monitor_id=monitor.id,
            status_code=SENTINEL_CODES[FailureCategory.REQUEST_ERROR],
            latency_ms=0,
            is_up=False,
            error_type=FailureCategory.REQUEST_ERROR,
            error_message="Неправильный URL формат",
            attempts=0,
        )

    # Валидация таймаута
    if (not isinstance(monitor.timeout_s, int) or monitor.timeout_s <= 0):
        logger.error(f"Неправильный таймаут: {monitor.timeout_s}")
        return ProbeResult(
            monitor_id=monitor.id,
            status_code=SENTINEL_CODES[FailureCategory.REQUEST_ERROR],
            latency_ms=0,
            is_up=False,
            error_type=FailureCategory.REQUEST_ERROR,
            error_message="Таймаут должен быть положительным целым числом",
            attempts=0,
        )

    logger.info(f"Начинаем проверку: {url}")

    result = await checker.probe(monitor)

    if result.is_up:
        logger.info(f"Успешная проверка {url}: {result.status_code}")
    else:
        logger.error(f"Ошибка при проверке {url}: {result.error_type.value if result.error_type else ''} {result.error_message}")

    return result
