"""Single HTTP listener shared by every tenant's callback routes."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Union

from aiohttp import web

logger = logging.getLogger(__name__)

CallbackHandler = Callable[[web.Request], Awaitable[web.StreamResponse]]
RoutePredicate = Callable[[web.Request], bool]


class SharedCallbackServer:
    """Bind one port per process and dispatch requests to registered handlers.

    Exact paths are checked first (a later registration on the same path
    replaces the earlier one); predicate routes are then tried in
    registration order.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 3456,
        *,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self._host = host
        self._port = port
        self._shutdown_timeout = shutdown_timeout
        self._routes: dict[str, CallbackHandler] = {}
        self._predicates: list[tuple[RoutePredicate, CallbackHandler]] = []
        self._runner: web.AppRunner | None = None
        self._app = web.Application()
        self._app.router.add_route("*", "/{tail:.*}", self._dispatch)

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}"

    @property
    def running(self) -> bool:
        return self._runner is not None

    def register_callback_handler(
        self,
        route: Union[str, RoutePredicate],
        handler: CallbackHandler,
    ) -> None:
        if isinstance(route, str):
            path = route if route.startswith("/") else f"/{route}"
            if path in self._routes:
                logger.warning("Replacing callback handler", extra={"path": path})
            self._routes[path] = handler
            logger.debug("Registered callback handler", extra={"path": path})
        elif callable(route):
            self._predicates.append((route, handler))
        else:
            raise TypeError("route must be a path string or a predicate callable")

    def resolve(self, request: web.Request) -> CallbackHandler | None:
        handler = self._routes.get(request.path)
        if handler is not None:
            return handler
        for predicate, candidate in self._predicates:
            if predicate(request):
                return candidate
        return None

    async def _dispatch(self, request: web.Request) -> web.StreamResponse:
        handler = self.resolve(request)
        if handler is None:
            return web.json_response({"error": f"no handler for {request.path}"}, status=404)
        return await handler(request)

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(self._app, shutdown_timeout=self._shutdown_timeout)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        self._port = self._resolve_port(runner) or self._port
        logger.info(
            "Callback server listening",
            extra={"host": self._host, "port": self._port, "routes": sorted(self._routes)},
        )

    @staticmethod
    def _resolve_port(runner: web.AppRunner) -> int | None:
        for address in runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return None

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        await runner.cleanup()
        logger.info("Callback server stopped", extra={"port": self._port})


__all__ = ["CallbackHandler", "RoutePredicate", "SharedCallbackServer"]
