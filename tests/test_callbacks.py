from __future__ import annotations

import asyncio

import aiohttp
import pytest
from aiohttp import web

from edgeworker.callbacks import SharedCallbackServer


def text_handler(body: str):
    async def handler(request: web.Request) -> web.Response:
        return web.Response(text=body)

    return handler


async def fetch(server: SharedCallbackServer, path: str) -> tuple[int, str]:
    async with aiohttp.ClientSession() as session:
        async with session.get(f"{server.url}{path}") as response:
            return response.status, await response.text()


def test_dispatches_exact_paths_and_predicates() -> None:
    server = SharedCallbackServer("127.0.0.1", 0)
    server.register_callback_handler("/callback/ceedar", text_handler("ceedar"))
    server.register_callback_handler("callback/bookkeeping", text_handler("bookkeeping"))
    server.register_callback_handler(
        lambda request: request.path.startswith("/hooks/"), text_handler("hook")
    )
    server.register_callback_handler(
        lambda request: request.path.startswith("/hooks/special"), text_handler("unreachable")
    )

    async def scenario():
        await server.start()
        try:
            return [
                await fetch(server, "/callback/ceedar?code=abc"),
                await fetch(server, "/callback/bookkeeping"),
                await fetch(server, "/hooks/special"),
                await fetch(server, "/missing"),
            ]
        finally:
            await server.stop()

    results = asyncio.run(scenario())

    assert results[0] == (200, "ceedar")
    assert results[1] == (200, "bookkeeping")
    assert results[2] == (200, "hook")
    assert results[3][0] == 404
    assert "/missing" in results[3][1]


def test_later_registration_replaces_path(caplog: pytest.LogCaptureFixture) -> None:
    server = SharedCallbackServer("127.0.0.1", 0)
    server.register_callback_handler("/callback/ceedar", text_handler("first"))
    with caplog.at_level("WARNING"):
        server.register_callback_handler("/callback/ceedar", text_handler("second"))

    async def scenario():
        await server.start()
        try:
            return await fetch(server, "/callback/ceedar")
        finally:
            await server.stop()

    assert asyncio.run(scenario()) == (200, "second")
    assert any("Replacing callback handler" in record.message for record in caplog.records)


def test_start_is_idempotent_and_resolves_port() -> None:
    server = SharedCallbackServer("127.0.0.1", 0)

    async def scenario():
        await server.start()
        port = server.port
        await server.start()
        try:
            assert server.running
            assert server.port == port
            assert port != 0
        finally:
            await server.stop()
        assert not server.running

    asyncio.run(scenario())


def test_stop_without_start_is_safe() -> None:
    server = SharedCallbackServer("127.0.0.1", 0)

    asyncio.run(server.stop())

    assert not server.running


def test_rejects_invalid_route() -> None:
    server = SharedCallbackServer("127.0.0.1", 0)

    with pytest.raises(TypeError):
        server.register_callback_handler(42, text_handler("x"))  # type: ignore[arg-type]
