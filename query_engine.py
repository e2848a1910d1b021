from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import pyarrow as pa
from datafusion import SessionContext, udf, udwf
from datafusion.user_defined import WindowEvaluator

from fixtures import FixtureError, LoadScript, parse_number
from series_selector import (
    METRIC_NAME_LABEL,
    SelectorError,
    format_labels,
    is_valid_label_name,
    labels_key,
    parse_selector,
)

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_MS = 5 * 60 * 1000

TABLES = ("series", "series_labels", "samples")

# Metric names may contain colons, so `select:foo` is a selector, not SQL.
_SQL_RE = re.compile(r"^\s*(select|with)(?![\w:])", re.IGNORECASE)


class QueryError(Exception):
    pass


@dataclass
class Sample:
    labels: Dict[str, str]
    value: float
    ts: int


def _parse_int_arg(value: pa.Array | pa.Scalar | int | None, default: int = 1) -> int:
    """Return a single integer value from an Arrow scalar/array with sane defaults."""

    if isinstance(value, pa.Array):
        if len(value) == 0:
            return default
        value = value[0]
    if hasattr(value, "as_py"):
        value = value.as_py()
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed


class DiffWindow(WindowEvaluator):
    def evaluate_all(self, values: list[pa.Array], num_rows: int) -> pa.Array:
        series = values[0].to_pylist()
        periods = max(1, _parse_int_arg(values[1], 1))
        out: list[float | None] = []
        for idx, curr in enumerate(series):
            if idx < periods or curr is None:
                out.append(None)
                continue
            prev = series[idx - periods]
            out.append(None if prev is None else curr - prev)
        return pa.array(out, type=pa.float64())


class CounterRateWindow(WindowEvaluator):
    """Per-second increase between consecutive samples; ``ts`` is in milliseconds."""

    def evaluate_all(self, values: list[pa.Array], num_rows: int) -> pa.Array:
        counters = values[0].to_pylist()
        timestamps = values[1].to_pylist()
        out: list[float | None] = []
        for idx in range(num_rows):
            curr = counters[idx]
            t1 = timestamps[idx]
            if idx == 0:
                out.append(None)
                continue
            prev = counters[idx - 1]
            t0 = timestamps[idx - 1]
            if None in (curr, prev, t1, t0):
                out.append(None)
                continue
            if t1 <= t0 or curr < prev:
                out.append(None)
                continue
            out.append((curr - prev) * 1000.0 / (t1 - t0))
        return pa.array(out, type=pa.float64())


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise QueryError(f"value {value!r} is not numeric") from exc


def _label_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class FixtureEngine:
    """Instant queries over fixture series, executed by DataFusion.

    The load script is run once in a bootstrap context; the resulting tables
    are kept as Arrow tables and registered into a fresh context per query.
    Queries are either a numeric literal, SQL (``SELECT``/``WITH``) over the
    ``instant``, ``samples``, ``series`` and ``series_labels`` relations, or a
    series selector such as ``up{job="api"}``.
    """

    def __init__(self, load_script: LoadScript, lookback_ms: int = DEFAULT_LOOKBACK_MS):
        if lookback_ms <= 0:
            raise ValueError("lookback must be positive")
        self.lookback_ms = lookback_ms
        self.interval_ms = load_script.interval_ms
        self._tables = self._bootstrap(load_script)
        self._series: Dict[int, Dict[str, str]] = {}
        self._label_index: Dict[str, List[str]] = {}
        self._build_label_index()
        logger.info(
            "Loaded %d series (%d samples) into the query engine",
            len(self._series),
            load_script.sample_count,
        )

    def _bootstrap(self, load_script: LoadScript) -> Dict[str, pa.Table]:
        ctx = SessionContext()
        for stmt in load_script.statements:
            if stmt.startswith("--"):
                continue
            try:
                ctx.sql(stmt).collect()
            except Exception as exc:
                raise FixtureError(f"load script statement failed: {stmt[:120]!r}: {exc}") from exc
        return {name: ctx.table(name).to_arrow_table() for name in TABLES}

    def _build_label_index(self) -> None:
        # Flat map derived once; the fixture never changes during the process lifetime.
        values: Dict[str, set] = {}
        rows = self._collect(
            self._new_context(0), "SELECT series_id, label, value FROM series_labels ORDER BY series_id, label"
        )
        for row in rows:
            sid = int(row["series_id"])
            self._series.setdefault(sid, {})[row["label"]] = row["value"]
            values.setdefault(row["label"], set()).add(row["value"])
        self._label_index = {name: sorted(vals) for name, vals in values.items()}

    def _register_udfs(self, ctx: SessionContext) -> None:
        def clamp(value: pa.Array | pa.Scalar | float | None, min_val: pa.Array | pa.Scalar | float | None, max_val: pa.Array | pa.Scalar | float | None):
            def clamp_value(val, lo, hi):
                if val is None or lo is None or hi is None:
                    return None
                return max(lo, min(val, hi))

            def normalize(value, length: int | None = None):
                if isinstance(value, pa.Array):
                    return [elem.as_py() for elem in value]
                if hasattr(value, "as_py"):
                    return value.as_py()
                if length is not None:
                    return [value] * length
                return value

            if isinstance(value, pa.Array):
                length = len(value)
                vals = normalize(value)
                mins = normalize(min_val, length)
                maxs = normalize(max_val, length)
                return pa.array(
                    [clamp_value(v, lo, hi) for v, lo, hi in zip(vals, mins, maxs)],
                    type=pa.float64(),
                )
            val = normalize(value)
            lo = normalize(min_val)
            hi = normalize(max_val)
            return clamp_value(val, lo, hi)

        clamp_udf = udf(
            clamp,
            [pa.float64(), pa.float64(), pa.float64()],
            pa.float64(),
            "immutable",
            "clamp",
        )
        ctx.register_udf(clamp_udf)

        # Window functions that need full partition context.
        ctx.register_udwf(
            udwf(
                DiffWindow,
                [pa.float64(), pa.int64()],
                pa.float64(),
                "immutable",
                "diff",
            )
        )

        ctx.register_udwf(
            udwf(
                CounterRateWindow,
                [pa.float64(), pa.int64()],
                pa.float64(),
                "immutable",
                "counter_rate",
            )
        )

    def _instant_sql(self, eval_ms: int) -> str:
        return f"""
CREATE VIEW instant AS
SELECT series_id, metric, ts, value
FROM (
  SELECT s.series_id, r.metric, s.ts, s.value, s.stale,
         ROW_NUMBER() OVER (PARTITION BY s.series_id ORDER BY s.ts DESC) AS rn
  FROM samples s
  JOIN series r ON s.series_id = r.series_id
  WHERE s.ts <= {eval_ms} AND s.ts > {eval_ms - self.lookback_ms}
) latest
WHERE rn = 1 AND NOT stale
"""

    def _new_context(self, eval_ms: int) -> SessionContext:
        ctx = SessionContext()
        self._register_udfs(ctx)
        for name, table in self._tables.items():
            ctx.from_arrow(table, name=name)
        ctx.sql(self._instant_sql(eval_ms)).collect()
        return ctx

    @staticmethod
    def _collect(ctx: SessionContext, sql: str) -> List[Dict[str, Any]]:
        df = ctx.sql(sql)
        batches = df.collect()
        rows: List[Dict[str, Any]] = []
        for batch in batches:
            batch_dict = batch.to_pydict()
            if not batch_dict:
                continue
            length = len(next(iter(batch_dict.values())))
            for idx in range(length):
                rows.append({col: batch_dict[col][idx] for col in batch_dict})
        return rows

    def run_sql(self, sql: str, eval_ms: int) -> List[Dict[str, Any]]:
        """Run raw SQL with the ``instant`` view evaluated at ``eval_ms``."""

        try:
            return self._collect(self._new_context(eval_ms), sql)
        except Exception as exc:
            raise QueryError(str(exc)) from exc

    def instant_query(self, expr: str, eval_ms: int) -> List[Sample]:
        logger.debug("Instant query at %dms: %s", eval_ms, expr)
        expr = expr.strip()
        if not expr:
            raise QueryError("empty query")
        try:
            return [Sample(labels={}, value=parse_number(expr), ts=eval_ms)]
        except ValueError:
            pass
        if _SQL_RE.match(expr):
            samples = self._rows_to_samples(self.run_sql(expr, eval_ms), eval_ms)
        else:
            samples = self._select(expr, eval_ms)
        self._check_unique(samples)
        return samples

    def _select(self, expr: str, eval_ms: int) -> List[Sample]:
        try:
            selector = parse_selector(expr)
            selector.validate_for_query()
        except SelectorError as exc:
            raise QueryError(f"parse error: {exc}") from exc
        ids = [sid for sid, labels in self._series.items() if selector.matches(labels)]
        if not ids:
            return []
        sql = f"SELECT series_id, value FROM instant WHERE series_id IN ({', '.join(str(i) for i in ids)})"
        samples = [
            Sample(labels=dict(self._series[int(row["series_id"])]), value=row["value"], ts=eval_ms)
            for row in self.run_sql(sql, eval_ms)
        ]
        return sorted(samples, key=lambda s: labels_key(s.labels))

    def _rows_to_samples(self, rows: Iterable[Dict[str, Any]], eval_ms: int) -> List[Sample]:
        samples: List[Sample] = []
        for row in rows:
            row = dict(row)
            if "value" in row:
                value = row.pop("value")
            elif len(row) == 1:
                (value,) = row.values()
                row = {}
            else:
                raise QueryError("query result has no 'value' column")
            if value is None:
                continue
            labels: Dict[str, str] = {}
            sid = row.pop("series_id", None)
            if sid is not None:
                try:
                    sid = int(sid)
                except (TypeError, ValueError) as exc:
                    raise QueryError(f"series_id {sid!r} is not an integer") from exc
                labels.update(self._series.get(sid, {}))
            metric = row.pop("metric", None)
            if metric:
                labels[METRIC_NAME_LABEL] = str(metric)
            row.pop("ts", None)
            for name, raw in row.items():
                if raw is None:
                    continue
                if not is_valid_label_name(name):
                    raise QueryError(f"column {name!r} is not a valid label name; alias it")
                labels[name] = _label_value(raw)
            samples.append(Sample(labels=labels, value=_to_float(value), ts=eval_ms))
        return samples

    @staticmethod
    def _check_unique(samples: List[Sample]) -> None:
        seen = set()
        for s in samples:
            key = labels_key(s.labels)
            if key in seen:
                raise QueryError(f"vector cannot contain metrics with the same labelset: {format_labels(s.labels)}")
            seen.add(key)

    def label_names(self) -> List[str]:
        return sorted(self._label_index)

    def label_values(self, name: str) -> List[str]:
        return list(self._label_index.get(name, []))

    def series(self, matchers: Iterable[str]) -> List[Dict[str, str]]:
        selectors = []
        for text in matchers:
            try:
                selector = parse_selector(text)
                selector.validate_for_query()
            except SelectorError as exc:
                raise QueryError(f"parse error: {exc}") from exc
            selectors.append(selector)
        found = {}
        for labels in self._series.values():
            if any(sel.matches(labels) for sel in selectors):
                found[labels_key(labels)] = dict(labels)
        return [found[key] for key in sorted(found)]

    def metadata(self, metric: Optional[str] = None, limit: Optional[int] = None) -> Dict[str, List[Dict[str, str]]]:
        names = self.label_values(METRIC_NAME_LABEL)
        if metric:
            names = [n for n in names if n == metric]
        if limit is not None and limit > 0:
            names = names[:limit]
        return {name: [{"type": metric_type(name), "help": "", "unit": ""}] for name in names}


def metric_type(name: str) -> str:
    if name.endswith(("_total", "_count", "_sum")):
        return "counter"
    if name.endswith("_bucket"):
        return "histogram"
    return "gauge"
