"""Middleware registration."""

from fastapi import FastAPI

from kcr.config import Settings
from kcr.middleware.cors import setup_cors
from kcr.middleware.error_handler import setup_error_handlers
from kcr.middleware.logging import setup_logging
from kcr.middleware.rate_limit import RateLimitMiddleware
from kcr.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Wire logging, error handlers and the middleware stack.

    Outermost first: CORS, request id, rate limiting (Starlette runs the last
    added middleware first). A ``rate_limit_requests`` of 0 turns limiting off.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    if settings.rate_limit_requests > 0:
        app.add_middleware(
            RateLimitMiddleware,
            requests_per_window=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
