import asyncio

import pytest
from aiohttp import web

from gpu_deployer.control_plane.admission_gate import AdmissionGate

from conftest import serve


def _probe(body, seen=None, content_type="application/json", status=200):
    async def handler(request: web.Request) -> web.Response:
        if seen is not None:
            seen.append(dict(request.headers))
        return web.Response(text=body, content_type=content_type, status=status)

    return handler


def _check(settings, handler) -> bool:
    async def scenario():
        async with serve(handler, "/busy") as url:
            gate = AdmissionGate(settings.model_copy(update={"busy_check_url": url}))
            return await gate.is_available()

    return asyncio.run(scenario())


def test_available_probe_admits(make_settings) -> None:
    seen = []
    assert _check(make_settings(), _probe('{"status": "available"}', seen)) is True
    assert seen[0]["Cache-Control"] == "no-cache"


@pytest.mark.parametrize("body", ['{"status": "busy"}', '{"status": "AVAILABLE"}', "{}"])
def test_non_available_status_holds(make_settings, body) -> None:
    assert _check(make_settings(), _probe(body)) is False


def test_json_body_without_json_content_type_is_read(make_settings) -> None:
    assert _check(make_settings(), _probe('{"status": "available"}', content_type="text/plain")) is True


def test_error_status_with_valid_body_is_still_read(make_settings) -> None:
    assert _check(make_settings(), _probe('{"status": "available"}', status=503)) is True
    assert _check(make_settings(busy_probe_fail_open=True), _probe('{"status": "busy"}', status=500)) is False


@pytest.mark.parametrize("fail_open", [False, True])
@pytest.mark.parametrize("body", ["<html>oops</html>", '["available"]'])
def test_malformed_probe_follows_policy(make_settings, body, fail_open) -> None:
    settings = make_settings(busy_probe_fail_open=fail_open)
    assert _check(settings, _probe(body)) is fail_open


@pytest.mark.parametrize("fail_open", [False, True])
def test_unreachable_probe_follows_policy(make_settings, fail_open) -> None:
    gate = AdmissionGate(make_settings(
        busy_check_url="http://127.0.0.1:1/busy",
        busy_probe_fail_open=fail_open,
        busy_probe_timeout_seconds=2,
    ))

    assert asyncio.run(gate.is_available()) is fail_open


def test_disabled_or_unset_probe_always_admits(make_settings) -> None:
    disabled = AdmissionGate(make_settings(
        busy_check_url="http://127.0.0.1:1/busy", disable_busy_check=True,
    ))
    unset = AdmissionGate(make_settings(busy_check_url=""))

    assert asyncio.run(disabled.is_available()) is True
    assert asyncio.run(unset.is_available()) is True
