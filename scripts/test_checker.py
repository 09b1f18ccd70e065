# scripts/test_checker.py
"""
Тесты URLChecker на локальном aiohttp-сервере.
Проверяет успех, коды ответа, редиректы, keyword, таймауты, ретраи и TLS.
"""

import asyncio
import os
import socket
import ssl
from datetime import datetime, timedelta, timezone

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from uptimer.checker import (
    CertificateInfo,
    URLChecker,
    classify_certificate,
    classify_exception,
    probe_monitor,
)
from uptimer.status_ranges import parse_status_ranges
from uptimer.types import FailureCategory, MonitorConfig, MonitorKind

CERT_DIR = os.path.join(os.path.dirname(__file__), "certs")


def _make_app(state=None):
    state = state if state is not None else {}

    async def ok(request):
        return web.Response(text="Hello, Uptimer is Healthy")

    async def fail(request):
        return web.Response(status=500, text="boom")

    async def missing(request):
        return web.Response(status=404, text="nope")

    async def redirect(request):
        raise web.HTTPFound("/ok")

    async def loop(request):
        raise web.HTTPFound("/loop")

    async def slow(request):
        await asyncio.sleep(2)
        return web.Response(text="late")

    async def flaky(request):
        state["hits"] = state.get("hits", 0) + 1
        if state["hits"] <= 2:
            return web.Response(status=503)
        return web.Response(text="recovered")

    async def degrading(request):
        # каждая попытка получает свой код: 501, 502, 503
        state["hits"] = state.get("hits", 0) + 1
        return web.Response(status=500 + state["hits"])

    app = web.Application()
    app.router.add_get("/ok", ok)
    app.router.add_get("/fail", fail)
    app.router.add_get("/missing", missing)
    app.router.add_get("/redirect", redirect)
    app.router.add_get("/loop", loop)
    app.router.add_get("/slow", slow)
    app.router.add_get("/flaky", flaky)
    app.router.add_get("/degrading", degrading)
    return app


def _probe(path, state=None, retry_delay_s=0.0, server_ssl=None, **fields):
    """Поднять сервер, проверить один монитор и вернуть ProbeResult."""
    async def run():
        server = TestServer(_make_app(state))
        await server.start_server(ssl=server_ssl)
        try:
            monitor = MonitorConfig(id=1, name="local", url=str(server.make_url(path)), **fields)
            async with URLChecker(retry_delay_s=retry_delay_s) as checker:
                return await probe_monitor(monitor, checker)
        finally:
            await server.close()
    return asyncio.run(run())


def _free_port() -> int:
    # порт освобождается сразу, поэтому соединение с ним будет отклонено
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_basic_success():
    result = _probe("/ok")
    assert result.is_up is True
    assert result.status_code == 200
    assert result.latency_ms >= 0
    assert result.error_type is None
    assert result.error_message is None
    assert result.attempts == 1
    assert result.final_url.endswith("/ok")


def test_server_error_is_down():
    result = _probe("/fail")
    assert result.is_up is False
    assert result.status_code == 500
    assert result.error_type == FailureCategory.STATUS_ERROR


def test_custom_accepted_statuses():
    result = _probe("/missing", accepted_statuses=parse_status_ranges("200-299,404"))
    assert result.is_up is True
    assert result.status_code == 404


def test_redirect_followed():
    result = _probe("/redirect")
    assert result.is_up is True
    assert result.status_code == 200
    assert result.redirect_count == 1
    assert result.final_url.endswith("/ok")


def test_redirect_not_followed():
    result = _probe("/redirect", follow_redirects=False)
    # 302 входит в диапазон по умолчанию 200-399
    assert result.is_up is True
    assert result.status_code == 302
    assert result.redirect_count == 0


def test_too_many_redirects():
    result = _probe("/loop", max_redirects=2)
    assert result.is_up is False
    assert result.error_type == FailureCategory.REQUEST_ERROR
    assert result.status_code == -4


def test_keyword_found_case_insensitive():
    result = _probe("/ok", kind=MonitorKind.KEYWORD, keyword="healthy")
    assert result.is_up is True


def test_keyword_case_sensitive_mismatch():
    result = _probe("/ok", kind=MonitorKind.KEYWORD, keyword="healthy", keyword_case_sensitive=True)
    assert result.is_up is False
    assert result.status_code == 200
    assert result.error_type == FailureCategory.KEYWORD_MISMATCH


def test_keyword_inverted():
    result = _probe("/ok", kind=MonitorKind.KEYWORD, keyword="error", keyword_invert=True)
    assert result.is_up is True
    result = _probe("/ok", kind=MonitorKind.KEYWORD, keyword="Healthy", keyword_invert=True)
    assert result.is_up is False
    assert result.error_type == FailureCategory.KEYWORD_MISMATCH


def test_timeout():
    result = _probe("/slow", timeout_s=1)
    assert result.is_up is False
    assert result.error_type == FailureCategory.TIMEOUT
    assert result.status_code == -1


def test_connection_refused():
    monitor = MonitorConfig(id=7, name="closed", url=f"http://127.0.0.1:{_free_port()}/", timeout_s=3)

    async def run():
        async with URLChecker(retry_delay_s=0) as checker:
            return await checker.probe(monitor)

    result = asyncio.run(run())
    assert result.is_up is False
    assert result.error_type == FailureCategory.CONNECTION_ERROR
    assert result.status_code == -3


def test_retry_until_success():
    """Две неудачи, затем успех: ровно три попытки."""
    state = {}
    result = _probe("/flaky", state=state, retry_count=3)
    assert result.is_up is True
    assert result.attempts == 3
    assert state["hits"] == 3


def test_retry_count_limits_attempts():
    state = {}
    result = _probe("/flaky", state=state, retry_count=2)
    assert result.is_up is False
    assert result.attempts == 2
    assert state["hits"] == 2


def test_retries_exhausted_returns_last_attempt():
    state = {}
    result = _probe("/degrading", state=state, retry_count=3)
    assert result.is_up is False
    assert result.attempts == 3
    assert result.status_code == 503
    assert result.error_message == "Server responded with status: 503"


def test_invalid_url_not_requested():
    async def run():
        async with URLChecker() as checker:
            return await probe_monitor(MonitorConfig(id=3, name="bad", url="ftp://example.com"), checker)

    result = asyncio.run(run())
    assert result.is_up is False
    assert result.error_type == FailureCategory.REQUEST_ERROR
    assert result.attempts == 0


def test_probe_requires_context_manager():
    checker = URLChecker()
    with pytest.raises(RuntimeError):
        asyncio.run(checker.probe(MonitorConfig(id=1, name="x", url="http://example.com")))


def test_invalid_checker_settings():
    with pytest.raises(ValueError):
        URLChecker(max_concurrent=0)
    with pytest.raises(ValueError):
        URLChecker(retry_delay_s=-1)


def test_certificate_expiring(monkeypatch):
    async def fake_inspect(self, host, port, timeout_s):
        return CertificateInfo(not_after=datetime.now(timezone.utc) + timedelta(days=3, hours=1))

    monkeypatch.setattr(URLChecker, "_inspect_certificate", fake_inspect)
    result = _probe("/ok", kind=MonitorKind.HTTPS, cert_expiry_days=7)
    assert result.is_up is False
    assert result.status_code == 200
    assert result.error_type == FailureCategory.SSL_EXPIRING
    assert "3 days" in result.error_message


def test_certificate_valid(monkeypatch):
    async def fake_inspect(self, host, port, timeout_s):
        return CertificateInfo(not_after=datetime.now(timezone.utc) + timedelta(days=90))

    monkeypatch.setattr(URLChecker, "_inspect_certificate", fake_inspect)
    result = _probe("/ok", kind=MonitorKind.HTTPS, cert_expiry_days=7)
    assert result.is_up is True


def test_certificate_invalid(monkeypatch):
    async def fake_inspect(self, host, port, timeout_s):
        raise ssl.SSLCertVerificationError("certificate verify failed: self signed certificate")

    monkeypatch.setattr(URLChecker, "_inspect_certificate", fake_inspect)
    result = _probe("/ok", kind=MonitorKind.HTTPS)
    assert result.is_up is False
    assert result.error_type == FailureCategory.SSL_INVALID


def test_certificate_skipped_without_verification(monkeypatch):
    async def fake_inspect(self, host, port, timeout_s):
        raise AssertionError("certificate must not be inspected")

    monkeypatch.setattr(URLChecker, "_inspect_certificate", fake_inspect)
    result = _probe("/ok", kind=MonitorKind.HTTPS, verify_tls=False)
    assert result.is_up is True


def test_classify_certificate_threshold():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    cert = CertificateInfo(not_after=now + timedelta(days=7))
    assert classify_certificate(cert, 7, now)[0] == FailureCategory.SSL_EXPIRING
    assert classify_certificate(cert, 6, now) == (None, None)


def test_classify_exception():
    assert classify_exception(asyncio.TimeoutError())[0] == FailureCategory.TIMEOUT
    assert classify_exception(socket.gaierror(-2, "Name or service not known"))[0] == FailureCategory.DNS_ERROR
    assert classify_exception(ConnectionResetError())[0] == FailureCategory.CONNECTION_ERROR
    assert classify_exception(ssl.SSLError("handshake"))[0] == FailureCategory.SSL_ERROR
    assert classify_exception(ValueError("bad"))[0] == FailureCategory.REQUEST_ERROR


def _self_signed_context() -> ssl.SSLContext:
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.load_cert_chain(os.path.join(CERT_DIR, "localhost.pem"), os.path.join(CERT_DIR, "localhost.key"))
    return ctx


def test_self_signed_certificate_is_invalid():
    result = _probe("/ok", server_ssl=_self_signed_context(), kind=MonitorKind.HTTPS)
    assert result.is_up is False
    assert result.error_type == FailureCategory.SSL_INVALID
    assert result.status_code == -5
    assert result.error_message.startswith("Invalid certificate")


def test_self_signed_certificate_on_plain_http_monitor():
    # для http-монитора ошибка TLS в запросе остаётся SSL_ERROR
    result = _probe("/ok", server_ssl=_self_signed_context())
    assert result.is_up is False
    assert result.error_type == FailureCategory.SSL_ERROR
    assert result.status_code == -5


def test_self_signed_certificate_without_verification():
    result = _probe("/ok", server_ssl=_self_signed_context(), kind=MonitorKind.HTTPS, verify_tls=False)
    assert result.is_up is True
    assert result.status_code == 200
    assert result.final_url.startswith("https://")


def test_certificate_inspection_rejects_self_signed():
    async def run():
        server = TestServer(_make_app())
        await server.start_server(ssl=_self_signed_context())
        try:
            async with URLChecker() as checker:
                await checker._inspect_certificate(server.host, server.port, 5)
        finally:
            await server.close()

    with pytest.raises(ssl.SSLCertVerificationError):
        asyncio.run(run())


def test_keyword_body_read_is_bounded(monkeypatch):
    monkeypatch.setattr("uptimer.checker.KEYWORD_BODY_LIMIT", 8)
    # "Healthy" лежит за пределами первых 8 байт тела
    result = _probe("/ok", kind=MonitorKind.KEYWORD, keyword="healthy")
    assert result.is_up is False
    assert result.error_type == FailureCategory.KEYWORD_MISMATCH
    assert _probe("/ok", kind=MonitorKind.KEYWORD, keyword="hello").is_up is True
