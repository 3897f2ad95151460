from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from typing import Optional

import uvicorn

from config_service import Settings, get_settings
from log_service import AppLogger
from pipeline_service import (
    ClientInputError,
    EndpointProfile,
    build_profiles,
    parse_request,
    run_buffered_pipeline,
    start_streaming_pipeline,
)
from stream_service import open_stream

# every method is routed so non-POST requests get the plain-text 405
ROUTE_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


def _error_response(e: ClientInputError) -> PlainTextResponse:
    body = e.message if e.status_code == 405 else f"[ERR] {e.message}"
    return PlainTextResponse(body, status_code=e.status_code)


def _make_handler(profile: EndpointProfile, settings: Settings, logger: AppLogger):
    async def handler(request: Request):
        logger.log(f"{profile.name} handler started")
        # all validation happens before the stream commits a 200
        try:
            req = await parse_request(request, profile, settings, logger)
        except ClientInputError as e:
            return _error_response(e)

        if not profile.streaming:
            status_code, body = await run_in_threadpool(run_buffered_pipeline, req, profile, logger)
            return PlainTextResponse(body, status_code=status_code)

        emitter, response = open_stream(task=profile.name, logger=logger)
        start_streaming_pipeline(req, profile, emitter, logger)
        return response

    handler.__name__ = profile.name
    return handler


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build an app instance with its own routing table, settings and log sink."""
    settings = settings or get_settings()
    logger = AppLogger(settings)

    app = FastAPI(title="Deploy Helper API")
    app.state.settings = settings
    app.state.logger = logger
    app.state.profiles = build_profiles(settings)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        print(f"[HTTP] {request.method} {request.url.path}")
        response = await call_next(request)
        print(f"[HTTP] {response.status_code} {request.method} {request.url.path}")
        return response

    for path, profile in app.state.profiles.items():
        app.add_api_route(path, _make_handler(profile, settings, logger), methods=ROUTE_METHODS, name=profile.name)
    return app


app = create_app()


if __name__ == "__main__":
    settings = app.state.settings
    app.state.logger.log(f"Server started on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port)
