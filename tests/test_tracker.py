from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager

import pytest
from aiohttp import web

from edgeworker.tracker import LinearIssueTracker, TrackerError


@asynccontextmanager
async def graphql_server(responder):
    requests: list[dict] = []

    async def handler(request: web.Request) -> web.StreamResponse:
        payload = await request.json()
        requests.append({"auth": request.headers.get("Authorization"), "payload": payload})
        response = responder(payload)
        if inspect.isawaitable(response):
            response = await response
        return response

    app = web.Application()
    app.router.add_post("/graphql", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = runner.addresses[0][1]
    try:
        yield f"http://127.0.0.1:{port}/graphql", requests
    finally:
        await runner.cleanup()


def test_fetch_issue_context() -> None:
    def responder(payload):
        assert payload["variables"] == {"id": "issue-1"}
        return web.json_response(
            {
                "data": {
                    "issue": {
                        "identifier": "CEE-1",
                        "title": "Broken login",
                        "description": "Users cannot log in",
                        "state": {"name": "Todo"},
                        "team": {"key": "CEE", "name": "Ceedar"},
                        "labels": {"nodes": [{"name": "bug"}]},
                    }
                }
            }
        )

    async def scenario():
        async with graphql_server(responder) as (url, requests):
            tracker = LinearIssueTracker("lin_api_token", endpoint=url)
            try:
                return await tracker.fetch_issue_context("issue-1"), requests
            finally:
                await tracker.close()

    context, requests = asyncio.run(scenario())

    assert context.identifier == "CEE-1"
    assert context.team == "CEE"
    assert context.labels == ["bug"]
    assert context.state == "Todo"
    assert requests[0]["auth"] == "lin_api_token"


def test_graphql_errors_raise() -> None:
    def responder(payload):
        return web.json_response({"errors": [{"message": "Entity not found"}]})

    async def scenario():
        async with graphql_server(responder) as (url, _):
            tracker = LinearIssueTracker("token", endpoint=url)
            try:
                await tracker.fetch_issue_context("missing")
            finally:
                await tracker.close()

    with pytest.raises(TrackerError, match="Entity not found"):
        asyncio.run(scenario())


def test_http_errors_raise() -> None:
    def responder(payload):
        return web.Response(status=401, text="unauthorized")

    async def scenario():
        async with graphql_server(responder) as (url, _):
            tracker = LinearIssueTracker("token", endpoint=url)
            try:
                await tracker.fetch_issue_context("issue-1")
            finally:
                await tracker.close()

    with pytest.raises(TrackerError, match="HTTP 401"):
        asyncio.run(scenario())


def test_post_activity_reports_success_and_failure() -> None:
    responses = iter(
        [
            lambda: web.json_response({"data": {"agentActivityCreate": {"success": True}}}),
            lambda: web.Response(status=500, text="down"),
        ]
    )
    captured: list[dict] = []

    def responder(payload):
        captured.append(payload)
        return next(responses)()

    async def scenario():
        async with graphql_server(responder) as (url, _):
            tracker = LinearIssueTracker("token", endpoint=url)
            try:
                return (
                    await tracker.post_activity("session-1", "Started"),
                    await tracker.post_activity("session-1", "Again"),
                )
            finally:
                await tracker.close()

    first, second = asyncio.run(scenario())

    assert first is True
    assert second is False
    assert captured[0]["variables"]["input"]["agentSessionId"] == "session-1"
    assert captured[0]["variables"]["input"]["content"]["body"] == "Started"


def test_timeout_raises_tracker_error() -> None:
    async def responder(payload):
        await asyncio.sleep(1)
        return web.json_response({"data": {}})

    async def scenario():
        async with graphql_server(responder) as (url, _):
            tracker = LinearIssueTracker("token", endpoint=url, timeout=0.2)
            try:
                await tracker.fetch_issue_context("issue-1")
            finally:
                await tracker.close()

    with pytest.raises(TrackerError, match="timed out"):
        asyncio.run(scenario())


def test_non_json_body_raises_tracker_error() -> None:
    def responder(payload):
        return web.Response(text="<html>maintenance</html>", content_type="application/json")

    async def scenario():
        async with graphql_server(responder) as (url, _):
            tracker = LinearIssueTracker("token", endpoint=url)
            try:
                await tracker.fetch_issue_context("issue-1")
            finally:
                await tracker.close()

    with pytest.raises(TrackerError, match="request failed"):
        asyncio.run(scenario())
