import itertools
import json
import logging
import os
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, TypeVar

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from nicegui import ui
from pydantic import BaseModel, ValidationError as PydanticValidationError

from perpdesk.core.config import get_settings
from perpdesk.core.errors import PerpdeskError, ValidationError
from perpdesk.core.timeutils import format_to_beijing, utc_now_iso
from perpdesk.models.requests import (
    AnalysisRequest,
    IndicatorsRequest,
    JsonRpcRequest,
    PromptAnalysisRequest,
    SmartTradeRequest,
    ToolCallRequest,
)
from perpdesk.models.trade import TradeRequest
from perpdesk.services.analysis_cache import AnalysisCache
from perpdesk.services.analysis_service import AnalysisOrchestrator
from perpdesk.services.binance_gateway import BinanceFuturesGateway
from perpdesk.services.indicator_service import IndicatorService, base_asset, normalize_symbol
from perpdesk.services.llm_service import LLMService
from perpdesk.services.mcp_tools import IndicatorToolbox
from perpdesk.services.order_dispatcher import OrderActionDispatcher
from perpdesk.services.prompt_builder import PromptLibrary
from perpdesk.ui.pages import register_pages

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class BackendEventHandler(logging.Handler):
    """Mirror application logs into the dashboard backend log."""

    def __init__(self, sink):
        super().__init__()
        self._sink = sink
        self._seq = itertools.count(1)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
        except Exception:  # pragma: no cover - formatting failure
            message = record.getMessage()
        entry = {
            "timestamp": utc_now_iso(),
            "message": message,
            "level": (record.levelname or "INFO").lower(),
            "source": "backend",
            "seq": next(self._seq),
        }
        try:
            self._sink(entry)
        except Exception:  # pragma: no cover - sink failure
            self.handleError(record)


def _attach_backend_handler(app: FastAPI) -> None:
    backend_handler = BackendEventHandler(app.state.backend_events.append)
    backend_handler.setLevel(logging.INFO)
    backend_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    target_logger_names = {
        "perpdesk",
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
        "uvicorn.asgi",
    }
    attached_loggers: list[logging.Logger] = []
    root_logger = logging.getLogger()
    if backend_handler not in root_logger.handlers:
        root_logger.addHandler(backend_handler)
        attached_loggers.append(root_logger)
    for name in target_logger_names:
        logger_ref = logging.getLogger(name)
        logger_ref.setLevel(logging.INFO)
        if backend_handler not in logger_ref.handlers:
            logger_ref.addHandler(backend_handler)
            attached_loggers.append(logger_ref)
    app.state.backend_log_handler = backend_handler
    app.state.backend_log_targets = attached_loggers


def _detach_backend_handler(app: FastAPI) -> None:
    handler = getattr(app.state, "backend_log_handler", None)
    if not handler:
        return
    for logger_ref in getattr(app.state, "backend_log_targets", []):
        try:
            logger_ref.removeHandler(handler)
        except (ValueError, AttributeError):
            continue
    handler.close()


def _create_lifespan(
    enable_background_services: bool,
    gateway: Any = None,
    llm_service: Any = None,
    prompts: PromptLibrary | None = None,
):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        app.state.backend_events = deque(maxlen=2000)
        _attach_backend_handler(app)

        owns_gateway = gateway is None
        exchange = gateway if gateway is not None else BinanceFuturesGateway.from_settings(settings)
        llm = llm_service if llm_service is not None else LLMService(model_id=settings.llm_model_id)
        library = prompts if prompts is not None else PromptLibrary.from_settings(settings)
        indicator_service = IndicatorService(
            exchange,
            candle_limit=settings.candle_limit,
            max_rows=settings.max_rows,
        )
        dispatcher = OrderActionDispatcher(exchange)
        app.state.settings = settings
        app.state.gateway = exchange
        app.state.llm_service = llm
        app.state.prompts = library
        app.state.indicator_service = indicator_service
        app.state.dispatcher = dispatcher
        app.state.orchestrator = AnalysisOrchestrator(exchange, indicator_service, llm, dispatcher, library)
        app.state.analysis_cache = AnalysisCache(settings.analysis_cache_ttl)
        app.state.toolbox = IndicatorToolbox(exchange, settings.coin_options)
        app.state.started_at = time.monotonic()

        missing = settings.missing_credentials()
        if missing:
            logger.warning("Missing credentials: %s", ", ".join(missing))
        if enable_background_services and owns_gateway:
            await exchange.warm_up()
        elif not enable_background_services:
            logger.info("Background services disabled; skipping exchange clock sync")

        try:
            yield
        finally:
            _detach_backend_handler(app)
            if owns_gateway:
                await exchange.close()

    return lifespan


def _error_response(exc: PerpdeskError, **extra: Any) -> JSONResponse:
    body = {"error": exc.message, **extra, "timestamp": utc_now_iso()}
    return JSONResponse(body, status_code=exc.status_code)


async def _read_model(request: Request, model: type[ModelT]) -> ModelT:
    """Parse the JSON body into ``model``; failures surface as 400 instead of 422."""
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError("request body must be valid JSON") from exc
    try:
        return model.model_validate(payload if payload is not None else {})
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "body"
        raise ValidationError(f"invalid field {field}: {first['msg']}") from exc


def _require_supported(symbol: str, coin_options: list[str]) -> str:
    asset = base_asset(symbol)
    if asset not in coin_options:
        raise ValidationError(f"unsupported symbol {symbol}, expected one of: {', '.join(coin_options)}")
    return asset


def create_app(
    enable_background_services: bool | None = None,
    *,
    gateway: Any = None,
    llm_service: Any = None,
    prompts: PromptLibrary | None = None,
) -> FastAPI:
    if enable_background_services is None:
        enable_background_services = os.environ.get("PYTEST_CURRENT_TEST") is None
    app = FastAPI(
        title="perpdesk",
        version="0.1.0",
        lifespan=_create_lifespan(enable_background_services, gateway, llm_service, prompts),
    )

    @app.exception_handler(PerpdeskError)
    async def perpdesk_error_handler(request: Request, exc: PerpdeskError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error_response(exc)

    @app.middleware("http")
    async def unexpected_error_guard(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return JSONResponse({"error": str(exc), "timestamp": utc_now_iso()}, status_code=500)

    @app.get("/health")
    async def health() -> JSONResponse:
        settings = get_settings()
        missing = settings.missing_credentials()
        if missing:
            return JSONResponse(
                {
                    "status": "unhealthy",
                    "message": f"missing environment variables: {', '.join(missing)}",
                    "timestamp": utc_now_iso(),
                },
                status_code=503,
            )
        started_at = getattr(app.state, "started_at", time.monotonic())
        return JSONResponse(
            {
                "status": "healthy",
                "message": "all services configured",
                "uptime": round(time.monotonic() - started_at, 3),
                "timestamp": utc_now_iso(),
            },
            status_code=200,
        )

    @app.post("/indicators")
    async def indicators(request: Request) -> JSONResponse:
        body = await _read_model(request, IndicatorsRequest)
        asset = _require_supported(body.symbol, app.state.settings.coin_options)
        report = await app.state.indicator_service.collect_report(asset)
        report["timestamp"] = utc_now_iso()
        return JSONResponse(report, status_code=200)

    @app.get("/account")
    async def account() -> JSONResponse:
        snapshot = await app.state.gateway.get_account_snapshot()
        payload = snapshot.to_payload()
        payload["timestamp"] = utc_now_iso()
        return JSONResponse(payload, status_code=200)

    async def _run_trade(request: Request, *, simple: bool) -> JSONResponse:
        trade = await _read_model(request, TradeRequest)
        dispatcher: OrderActionDispatcher = app.state.dispatcher
        try:
            result = await (dispatcher.dispatch_simple(trade) if simple else dispatcher.dispatch(trade))
        except PerpdeskError as exc:
            logger.error("Trade %s on %s failed: %s", trade.action.value, trade.symbol, exc.message)
            return _error_response(exc, action=trade.action.value, symbol=trade.symbol)
        payload = result.to_payload()
        return JSONResponse(
            {
                "success": True,
                "action": payload["action"],
                "symbol": payload["symbol"],
                "data": payload["data"],
                "cancelledOrderIds": payload["cancelledOrderIds"],
                "message": f"{trade.action.value} executed for {trade.symbol}",
                "timestamp": utc_now_iso(),
            },
            status_code=200,
        )

    @app.post("/trade")
    async def trade(request: Request) -> JSONResponse:
        return await _run_trade(request, simple=True)

    @app.post("/trade/enhanced")
    async def trade_enhanced(request: Request) -> JSONResponse:
        return await _run_trade(request, simple=False)

    @app.get("/trade/enhanced")
    async def trade_overview(symbol: str | None = None, detailed: bool = False) -> JSONResponse:
        gateway = app.state.gateway
        if symbol:
            data = await gateway.get_symbol_overview(normalize_symbol(symbol), detailed)
        else:
            data = await gateway.get_overview()
        return JSONResponse({"success": True, "data": data, "timestamp": utc_now_iso()}, status_code=200)

    @app.post("/ai/analysis")
    async def ai_analysis(request: Request) -> JSONResponse:
        body = await _read_model(request, AnalysisRequest)
        orchestrator: AnalysisOrchestrator = app.state.orchestrator
        if body.enable_auto_trading:
            result = await orchestrator.analyze_with_auto_trading(body.symbol, body.confidence_threshold)
        else:
            result = await orchestrator.analyze(body.symbol)
        return JSONResponse(result.to_payload(), status_code=200)

    @app.get("/ai/analysis/cached")
    async def ai_analysis_cached(symbol: str = "BTC", refresh: bool = False) -> JSONResponse:
        payload, hit = await app.state.orchestrator.analyze_cached(
            symbol.strip().upper(),
            app.state.analysis_cache,
            refresh=refresh,
        )
        return JSONResponse(
            {**payload, "cached": hit},
            status_code=200,
            headers={"X-Cache": "HIT" if hit else "MISS"},
        )

    @app.get("/ai/analysis/fast")
    async def ai_analysis_fast(symbol: str = "BTC") -> StreamingResponse:
        orchestrator: AnalysisOrchestrator = app.state.orchestrator

        async def event_stream() -> AsyncIterator[str]:
            async for event in orchestrator.fast_analysis_events(symbol.strip().upper()):
                yield f"data: {json.dumps(event, ensure_ascii=False)}\n\n"

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.post("/ai/smart-trade")
    async def ai_smart_trade(request: Request) -> JSONResponse:
        body = await _read_model(request, SmartTradeRequest)
        result = await app.state.orchestrator.smart_trade(body.symbol, auto_execute=body.auto_execute)
        result["success"] = True
        return JSONResponse(result, status_code=200)

    @app.get("/ai/prompts")
    async def ai_prompts() -> JSONResponse:
        payload = app.state.prompts.describe()
        payload["timestamp"] = utc_now_iso()
        return JSONResponse(payload, status_code=200)

    @app.post("/ai/prompt-analysis")
    async def ai_prompt_analysis(request: Request) -> JSONResponse:
        body = await _read_model(request, PromptAnalysisRequest)
        result = await app.state.orchestrator.prompt_analysis(
            body.symbol,
            body.prompt_type,
            body.market_data,
            body.indicators,
        )
        result["timestamp"] = utc_now_iso()
        result["timestampBeijing"] = format_to_beijing()
        return JSONResponse(result, status_code=200)

    @app.get("/mcp/tools")
    async def mcp_tools() -> JSONResponse:
        return JSONResponse(
            {"jsonrpc": "2.0", "result": {"tools": app.state.toolbox.catalogue()}},
            status_code=200,
        )

    @app.post("/mcp/tools")
    async def mcp_rpc(request: Request) -> JSONResponse:
        rpc = await _read_model(request, JsonRpcRequest)
        toolbox: IndicatorToolbox = app.state.toolbox
        if rpc.method == "tools/call":
            try:
                result = await toolbox.rpc_call(rpc.params)
            except PerpdeskError as exc:
                return JSONResponse(
                    {"jsonrpc": "2.0", "id": rpc.id, "error": {"code": -32602, "message": exc.message}},
                    status_code=exc.status_code,
                )
        elif rpc.method == "tools/list":
            result = {"tools": toolbox.catalogue()}
        else:
            return JSONResponse(
                {"jsonrpc": "2.0", "id": rpc.id, "error": {"code": -32601, "message": f"method not found: {rpc.method}"}},
                status_code=400,
            )
        return JSONResponse({"jsonrpc": "2.0", "id": rpc.id, "result": result}, status_code=200)

    @app.post("/mcp/call")
    async def mcp_call(request: Request) -> JSONResponse:
        body = await _read_model(request, ToolCallRequest)
        result = await app.state.toolbox.call(body.tool, body.arguments)
        return JSONResponse({"result": result, "timestamp": utc_now_iso()}, status_code=200)

    register_pages(app)
    ui.run_with(app)
    return app


app = create_app()
