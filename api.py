import logging
import math
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData

from config import Settings
from fixtures import build_load_script, load_fixture_file
from query_engine import FixtureEngine, QueryError, Sample
from series_selector import is_valid_label_name

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

_FRACTION = re.compile(r"\.(\d+)")


class ApiError(Exception):
    def __init__(self, status_code: int, error_type: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.message = message


def format_value(value: float) -> str:
    """Render a sample value the way the Prometheus API does (``1``, ``1.5``, ``+Inf``)."""

    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    text = format(Decimal(repr(float(value))), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_timestamp(ms: int) -> Any:
    return ms // 1000 if ms % 1000 == 0 else ms / 1000


def parse_time(raw: str) -> int:
    """Parse a ``time`` parameter (Unix seconds or RFC 3339) into milliseconds."""

    try:
        seconds = float(raw)
    except ValueError:
        seconds = None
    if seconds is not None:
        if not math.isfinite(seconds):
            raise ValueError(f"cannot parse {raw!r} to a valid timestamp")
        return int(round(seconds * 1000))
    # fromisoformat on 3.10 only takes 3- or 6-digit fractions and no "Z".
    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], raw.replace("Z", "+00:00"))
    try:
        dt = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"cannot parse {raw!r} to a valid timestamp") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def sample_to_json(sample: Sample) -> Dict[str, Any]:
    return {
        "metric": dict(sample.labels),
        "value": [format_timestamp(sample.ts), format_value(sample.value)],
    }


def _success(data: Any) -> Dict[str, Any]:
    return {"status": "success", "data": data}


class _Params:
    """Form body values take precedence over query-string values."""

    def __init__(self, form: Mapping[str, Any], query: Mapping[str, Any]):
        self.form = form
        self.query = query

    def get(self, name: str) -> Optional[str]:
        value = self.form.get(name)
        if value is None:
            value = self.query.get(name)
        return value

    def getlist(self, name: str) -> List[str]:
        return list(self.form.getlist(name)) + list(self.query.getlist(name))


async def _params(request: Request) -> _Params:
    form = await request.form() if request.method == "POST" else FormData()
    return _Params(form, request.query_params)


def create_app(engine: FixtureEngine, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    app = FastAPI(title="fixture-query-server", version=VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=settings.cors_origin,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Accept", "Authorization", "Content-Type", "Origin"],
        expose_headers=["Date"],
    )

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": "error", "errorType": exc.error_type, "error": exc.message},
        )

    @app.api_route("/api/v1/query", methods=["GET", "POST"])
    async def query(request: Request) -> Dict[str, Any]:
        params = await _params(request)
        expr = params.get("query")
        if not expr:
            raise ApiError(400, "bad_data", 'invalid parameter "query": query must not be empty')
        eval_ms = settings.eval_time_ms
        raw_time = params.get("time")
        if raw_time:
            try:
                requested = parse_time(raw_time)
            except ValueError as exc:
                raise ApiError(400, "bad_data", f'invalid parameter "time": {exc}') from exc
            if settings.honor_request_time:
                eval_ms = requested
        try:
            samples = await run_in_threadpool(engine.instant_query, expr, eval_ms)
        except QueryError as exc:
            logger.warning("Query %r failed: %s", expr, exc)
            raise ApiError(500, "execution", f"error while executing query: {exc}") from exc
        return _success({"resultType": "vector", "result": [sample_to_json(s) for s in samples]})

    @app.get("/api/v1/labels")
    def labels() -> Dict[str, Any]:
        return _success(engine.label_names())

    @app.get("/api/v1/label/{name}/values")
    def label_values(name: str) -> Dict[str, Any]:
        if not is_valid_label_name(name):
            raise ApiError(400, "bad_data", f"invalid label name: {name!r}")
        return _success(engine.label_values(name))

    @app.api_route("/api/v1/series", methods=["GET", "POST"])
    async def series(request: Request) -> Dict[str, Any]:
        params = await _params(request)
        matchers = params.getlist("match[]")
        if not matchers:
            raise ApiError(400, "bad_data", "no match[] parameter provided")
        try:
            found = engine.series(matchers)
        except QueryError as exc:
            raise ApiError(400, "bad_data", str(exc)) from exc
        return _success(found)

    @app.get("/api/v1/metadata")
    def metadata(metric: Optional[str] = None, limit: Optional[str] = None) -> Dict[str, Any]:
        parsed_limit = None
        if limit:
            try:
                parsed_limit = int(limit)
            except ValueError as exc:
                raise ApiError(400, "bad_data", f'invalid parameter "limit": {limit!r}') from exc
        return _success(engine.metadata(metric=metric, limit=parsed_limit))

    @app.get("/api/v1/status/buildinfo")
    def buildinfo() -> Dict[str, Any]:
        return _success({"version": VERSION, "revision": "", "branch": "", "buildUser": "", "buildDate": ""})

    @app.get("/-/healthy", response_class=PlainTextResponse)
    def healthy() -> str:
        return "Fixture Query Server is Healthy.\n"

    @app.get("/-/ready", response_class=PlainTextResponse)
    def ready() -> str:
        return "Fixture Query Server is Ready.\n"

    return app


def create_app_from_settings(settings: Settings) -> FastAPI:
    if not settings.fixture_file:
        raise ValueError("a fixture file is required (set FIXTURE_FILE or pass --fixture-file)")
    script = build_load_script(load_fixture_file(settings.fixture_file))
    engine = FixtureEngine(script, lookback_ms=settings.lookback_ms)
    logger.info("Serving fixture %s evaluated at %dms", settings.fixture_file, settings.eval_time_ms)
    return create_app(engine, settings)


def app_from_env() -> FastAPI:
    """Factory for ``uvicorn api:app_from_env --factory``."""

    return create_app_from_settings(Settings.from_env())
