"""Payload normalization into pandas DataFrames."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import pandas as pd

from dashsync.notebooks import CellResult, ResultKind

TIMELINE_COLUMNS = ["date", "cost_usd", "tokens", "requests"]

QUERY_RESULT_COLUMNS = [
    "timestamp",
    "operation_name",
    "service_name",
    "status",
    "gen_ai_model",
    "http_method",
    "cost_usd",
    "duration_ms",
]


def build_timeline_df(summary: Mapping[str, Any]) -> pd.DataFrame:
    """Normalize a dashboard summary's timeline into one row per day."""
    rows: list[dict[str, Any]] = []

    for item in _timeline_items(summary):
        rows.append(
            {
                "date": item.get("date"),
                "cost_usd": item.get("cost", item.get("amount", 0)),
                "tokens": item.get("tokens", item.get("totalTokens", 0)),
                "requests": item.get("requests", item.get("calls", 0)),
            }
        )

    df = pd.DataFrame(rows, columns=TIMELINE_COLUMNS)
    if df.empty:
        return df

    df["date"] = pd.to_datetime(df["date"], errors="coerce", utc=True)
    for col in ["cost_usd", "tokens", "requests"]:
        df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0)

    return df.dropna(subset=["date"]).sort_values("date").reset_index(drop=True)


def build_query_result_df(result: CellResult) -> pd.DataFrame:
    """Flatten a ``query_result`` cell output into a table of matched records."""
    if result.kind is not ResultKind.QUERY_RESULT:
        raise ValueError(f"Expected a query_result, got {result.kind.value}")

    records = result.data.get("results") or []
    rows = [_query_row(record) for record in records if isinstance(record, dict)]

    df = pd.DataFrame(rows, columns=QUERY_RESULT_COLUMNS)
    if df.empty:
        return df

    df["timestamp"] = pd.to_datetime(df["timestamp"], errors="coerce", utc=True)
    df["cost_usd"] = pd.to_numeric(df["cost_usd"], errors="coerce").fillna(0.0)
    df["duration_ms"] = pd.to_numeric(df["duration_ms"], errors="coerce")
    return df


def summarize_query_result(result: CellResult) -> dict[str, Any]:
    """Headline numbers shown above a query result table."""
    df = build_query_result_df(result)
    total_count = result.data.get("total_count")
    return {
        "records": len(df),
        "total_count": int(total_count) if total_count is not None else len(df),
        "total_cost_usd": float(df["cost_usd"].sum()) if not df.empty else 0.0,
        "avg_duration_ms": (
            float(df["duration_ms"].mean())
            if not df.empty and df["duration_ms"].notna().any()
            else None
        ),
        "execution_time_ms": result.execution_time_ms,
    }


def _timeline_items(summary: Mapping[str, Any]) -> Iterable[dict[str, Any]]:
    for key in ("timeline", "daily", "costTrends"):
        items = summary.get(key)
        if isinstance(items, list):
            return [item for item in items if isinstance(item, dict)]
    return []


def _query_row(record: dict[str, Any]) -> dict[str, Any]:
    return {
        "timestamp": record.get("timestamp"),
        "operation_name": record.get("operation_name") or "unknown",
        "service_name": record.get("service_name") or "unknown",
        "status": record.get("status") or "unknown",
        "gen_ai_model": record.get("gen_ai_model"),
        "http_method": record.get("http_method"),
        "cost_usd": record.get("cost_usd", 0),
        "duration_ms": record.get("duration_ms"),
    }
