import asyncio

from aiohttp import web

from gpu_deployer.control_plane.notifier import Notifier

from conftest import serve


def test_delivers_payload_with_token(make_settings) -> None:
    received = []

    async def handler(request: web.Request) -> web.Response:
        received.append((dict(request.headers), await request.json()))
        return web.json_response({"ok": True})

    async def scenario():
        async with serve(handler, "/hook") as url:
            notifier = Notifier(make_settings(notify_url=url, notify_token="tok-1"))
            return await notifier.notify("a@b.c", "https://gpu.example", "sd", 30, False)

    result = asyncio.run(scenario())

    assert result.delivered is True
    assert result.error is None
    headers, payload = received[0]
    assert headers["X-Notify-Token"] == "tok-1"
    assert payload == {
        "email": "a@b.c",
        "uri": "https://gpu.example",
        "product": "sd",
        "minutes": 30,
        "dry_run": False,
    }


def test_no_token_header_without_token(make_settings) -> None:
    received = []

    async def handler(request: web.Request) -> web.Response:
        received.append(dict(request.headers))
        return web.Response(status=204)

    async def scenario():
        async with serve(handler, "/hook") as url:
            return await Notifier(make_settings(notify_url=url)).notify(None, None, "llama", 60, True)

    assert asyncio.run(scenario()).delivered is True
    assert "X-Notify-Token" not in received[0]


def test_error_status_is_reported(make_settings) -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.Response(status=500, text="boom")

    async def scenario():
        async with serve(handler, "/hook") as url:
            return await Notifier(make_settings(notify_url=url)).notify("a@b.c", "u", "sd", 5, False)

    result = asyncio.run(scenario())

    assert result.delivered is False
    assert result.error == "http_500"


def test_unset_url_is_a_no_op(make_settings) -> None:
    result = asyncio.run(Notifier(make_settings(notify_url=None)).notify("a@b.c", "u", "sd", 5, False))

    assert result.delivered is False
    assert result.error == "notify_url_unset"


def test_unreachable_webhook_does_not_raise(make_settings) -> None:
    notifier = Notifier(make_settings(notify_url="http://127.0.0.1:1/hook", notify_timeout_seconds=2))

    result = asyncio.run(notifier.notify("a@b.c", "u", "whisper", 5, False))

    assert result.delivered is False
    assert result.error
