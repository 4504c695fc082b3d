from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class ExpressionRequest(BaseModel):
    expression: str


class ValidateResponse(BaseModel):
    valid: bool
    error: Optional[str] = None


class CompileRequest(BaseModel):
    expression: str
    row_cap: Optional[int] = Field(default=None, ge=1)
    start_ts: Optional[int] = None
    end_ts: Optional[int] = None


class ConditionModel(BaseModel):
    scope: str
    metric: str
    horizon: str
    operator: str
    threshold: float
    is_symbol_ref: bool = False
    logic: Optional[str] = None


class CompileResponse(BaseModel):
    canonical: str
    symbols: list[str] | str
    direction: str
    conditions: list[ConditionModel] = Field(default_factory=list)
    exchange_groups: dict[str, list[str]] = Field(default_factory=dict)
    sql: str
    params: list[Any] = Field(default_factory=list)


class BacktestRequest(BaseModel):
    expression: str
    trade: dict[str, Any] = Field(default_factory=dict)
    constraints: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    start_ts: Optional[int | str] = None
    end_ts: Optional[int | str] = None
    row_cap: Optional[int] = Field(default=None, ge=1)
    price_exchange: Optional[str] = None
    include_trades: bool = False


class ReportResponse(BaseModel):
    metadata: dict[str, Any] = Field(default_factory=dict)
    summary: dict[str, Any] = Field(default_factory=dict)
    results: list[dict[str, Any]] = Field(default_factory=list)
    evaluations: Optional[list[dict[str, Any]]] = None


class LatestReportResponse(BaseModel):
    filename: str
    report: dict[str, Any] = Field(default_factory=dict)


class SymbolsResponse(BaseModel):
    symbols: list[str] = Field(default_factory=list)


class ColumnsResponse(BaseModel):
    columns: list[str] = Field(default_factory=list)
