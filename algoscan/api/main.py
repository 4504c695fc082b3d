from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from algoscan.cache import get_redis_client, redis_get_json, redis_set_json
from algoscan.config import get_settings
from algoscan.errors import ConfigError, ParseError, StoreError
from algoscan.features.algoql.compiler import compile_query
from algoscan.features.algoql.parser import compile_expression, format_expression, validate_algoql
from algoscan.features.discovery.engine import RuntimeOptions
from algoscan.features.discovery.service import BacktestService
from algoscan.features.market.schema import MARKET_TOTAL_SYMBOL
from algoscan.features.market.store import MetricStore
from algoscan.features.report.reporter import latest_report

from algoscan.api.models import (
    BacktestRequest,
    ColumnsResponse,
    CompileRequest,
    CompileResponse,
    ConditionModel,
    ExpressionRequest,
    LatestReportResponse,
    ReportResponse,
    SymbolsResponse,
    ValidateResponse,
)

logger = logging.getLogger(__name__)

settings = get_settings()


def _store() -> MetricStore:
    return MetricStore(settings.metrics_db_path)


def _store_unavailable(exc: StoreError) -> HTTPException:
    logger.error("Metric store unavailable: %s", exc)
    return HTTPException(status_code=503, detail=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.redis = get_redis_client(settings.redis_url)
    yield
    client = getattr(app.state, "redis", None)
    if client is not None:
        client.close()


app = FastAPI(title="Algoscan", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/v1/symbols", response_model=SymbolsResponse)
def symbols(
    exchange: Optional[str] = Query(default=None),
    include_market_total: bool = Query(default=False),
):
    exclude = () if include_market_total else (MARKET_TOTAL_SYMBOL,)
    try:
        return SymbolsResponse(symbols=_store().list_symbols(exchange=exchange, exclude=exclude))
    except StoreError as exc:
        raise _store_unavailable(exc) from exc


@app.get("/v1/columns", response_model=ColumnsResponse)
def columns():
    try:
        return ColumnsResponse(columns=_store().list_columns())
    except StoreError as exc:
        raise _store_unavailable(exc) from exc


@app.post("/v1/algoql/validate", response_model=ValidateResponse)
def algoql_validate(req: ExpressionRequest):
    ok, reason = validate_algoql(req.expression)
    return ValidateResponse(valid=ok, error=reason)


@app.post("/v1/algoql/compile", response_model=CompileResponse)
def algoql_compile(req: CompileRequest):
    try:
        expr = compile_expression(req.expression)
        query = compile_query(
            expr,
            row_cap=req.row_cap or settings.query_row_cap,
            start_ts=req.start_ts,
            end_ts=req.end_ts,
        )
    except ParseError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    sql, params = query.to_sql("format" if _store().is_postgres else "qmark")
    return CompileResponse(
        canonical=format_expression(expr),
        symbols=expr.symbols if isinstance(expr.symbols, str) else list(expr.symbols),
        direction=expr.direction.value,
        conditions=[
            ConditionModel(
                scope=c.scope,
                metric=c.metric,
                horizon=c.horizon,
                operator=c.operator,
                threshold=c.threshold,
                is_symbol_ref=c.is_symbol_ref,
                logic=c.logic,
            )
            for c in expr.conditions
        ],
        exchange_groups={g.exchange: [c.token for c in g.conditions] for g in query.groups},
        sql=sql,
        params=params,
    )


@app.post("/v1/backtest", response_model=ReportResponse)
def backtest(req: BacktestRequest):
    service = BacktestService(_store(), runtime=RuntimeOptions.from_settings(settings))
    try:
        return service.run(req.model_dump(exclude_none=True))
    except (ParseError, ConfigError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise _store_unavailable(exc) from exc


@app.get("/v1/reports/latest", response_model=LatestReportResponse)
def reports_latest(refresh: bool = Query(default=False)):
    client = getattr(app.state, "redis", None)
    if not refresh:
        cached = redis_get_json(client, "reports:latest")
        if isinstance(cached, dict) and cached.get("filename"):
            return cached

    path = latest_report(settings.report_dir)
    if path is None:
        raise HTTPException(status_code=404, detail="No report written yet")
    try:
        report = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise HTTPException(status_code=500, detail=f"Failed to read {path.name}: {exc}") from exc

    resp = LatestReportResponse(filename=path.name, report=report).model_dump()
    redis_set_json(client, "reports:latest", resp, ttl_seconds=10)
    return resp
