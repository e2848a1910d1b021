"""Prometheus rule unit-test files and the load script built from them.

A unit-test file (see
https://prometheus.io/docs/prometheus/latest/configuration/unit_testing_rules/)
lists ``input_series`` per test group, each with a compact value notation such
as ``0+10x5`` or ``1 _ stale``. Only the input series matter here; the alert
and expression tests are accepted and ignored.

The load script is plain SQL that the embedded engine executes to materialize
three tables:

    series(series_id, metric)
    series_labels(series_id, label, value)
    samples(series_id, ts, value, stale)

Timestamps are milliseconds since the Unix epoch.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from series_selector import METRIC_NAME_LABEL, SelectorError, format_labels, labels_key, parse_series

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 60_000

_DURATION_UNITS = [
    ("y", 365 * 24 * 60 * 60 * 1000),
    ("w", 7 * 24 * 60 * 60 * 1000),
    ("d", 24 * 60 * 60 * 1000),
    ("h", 60 * 60 * 1000),
    ("m", 60 * 1000),
    ("s", 1000),
    ("ms", 1),
]
_DURATION_RE = re.compile(r"^(?:(\d+)y)?(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?(?:(\d+)ms)?$")

_NUMBER = r"[-+]?(?:inf|nan|(?:\d+\.?\d*|\.\d+)(?:e[-+]?\d+)?)"
_EXPANDING_RE = re.compile(rf"^(?P<start>{_NUMBER})(?:(?P<op>[-+])(?P<step>{_NUMBER}))?x(?P<times>\d+)$", re.IGNORECASE)
_NUMBER_RE = re.compile(rf"^{_NUMBER}$", re.IGNORECASE)
_OMIT_RE = re.compile(r"^_(?:x(?P<times>\d+))?$")

Sample = Tuple[int, float, bool]


class FixtureError(Exception):
    pass


def parse_duration(text: str) -> int:
    """Parse a Prometheus duration (``1h30m``, ``5m``, ``250ms``) into milliseconds."""

    text = str(text).strip()
    m = _DURATION_RE.match(text)
    if not text or not m or not any(m.groups()):
        raise ValueError(f"not a valid duration string: {text!r}")
    total = 0
    for group, (_, unit_ms) in zip(m.groups(), _DURATION_UNITS):
        if group:
            total += int(group) * unit_ms
    return total


def format_duration(ms: int) -> str:
    """Shortest Prometheus rendering: ``1m`` rather than ``1m0s``."""

    if ms == 0:
        return "0s"
    out = []
    remaining = ms
    for unit, unit_ms in _DURATION_UNITS:
        count, remaining = divmod(remaining, unit_ms)
        if count:
            out.append(f"{count}{unit}")
    return "".join(out)


def parse_number(token: str) -> float:
    if not _NUMBER_RE.match(token):
        raise ValueError(f"invalid number {token!r}")
    return float(token)


def expand_values(text: str, interval_ms: int = DEFAULT_INTERVAL_MS) -> List[Sample]:
    """Expand the value notation of a fixture series into ``(ts, value, stale)`` samples."""

    samples: List[Sample] = []
    step = 0
    for token in str(text).split():
        if token.startswith("{{"):
            raise ValueError("native histogram values are not supported")
        omit = _OMIT_RE.match(token)
        if omit:
            step += int(omit.group("times")) if omit.group("times") else 1
            continue
        if token == "stale":
            samples.append((step * interval_ms, math.nan, True))
            step += 1
            continue
        expanding = _EXPANDING_RE.match(token)
        if expanding:
            start = float(expanding.group("start"))
            delta = float(expanding.group("step")) if expanding.group("step") else 0.0
            if expanding.group("op") == "-":
                delta = -delta
            value = start
            for _ in range(int(expanding.group("times")) + 1):
                samples.append((step * interval_ms, value, False))
                value += delta
                step += 1
            continue
        samples.append((step * interval_ms, parse_number(token), False))
        step += 1
    return samples


class InputSeries(BaseModel):
    model_config = ConfigDict(extra="ignore")

    series: str
    values: str = ""

    @field_validator("series")
    @classmethod
    def _check_series(cls, v: str) -> str:
        try:
            labels = parse_series(v)
        except SelectorError as exc:
            raise ValueError(f"series {v!r}: {exc}") from exc
        if not labels:
            raise ValueError(f"series {v!r} has an empty label set")
        return v

    @field_validator("values", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        return "" if v is None else str(v)


class UnitTest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    interval: Optional[str] = None
    input_series: List[InputSeries] = []
    external_labels: Optional[Dict[str, str]] = None
    alert_rule_test: List[Dict[str, Any]] = []
    promql_expr_test: List[Dict[str, Any]] = []

    @field_validator("input_series", "alert_rule_test", "promql_expr_test", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class UnitTestFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rule_files: List[str] = []
    evaluation_interval: Optional[str] = None
    tests: List[UnitTest] = []

    @field_validator("rule_files", "tests", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


@dataclass
class FixtureSeries:
    series_id: int
    labels: Dict[str, str]
    samples: List[Sample] = field(default_factory=list)

    @property
    def metric(self) -> str:
        return self.labels.get(METRIC_NAME_LABEL, "")


@dataclass
class LoadScript:
    interval_ms: int
    statements: List[str]
    series: List[FixtureSeries]

    @property
    def text(self) -> str:
        return "\n".join(self.statements) + "\n"

    @property
    def sample_count(self) -> int:
        return sum(len(s.samples) for s in self.series)


def load_fixture_file(path: Union[str, Path]) -> UnitTestFile:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise FixtureError(f"cannot read fixture file {path}: {exc}") from exc
    return parse_fixture(raw, source=str(path))


def parse_fixture(raw: str, source: str = "<string>") -> UnitTestFile:
    try:
        doc = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise FixtureError(f"{source}: invalid YAML: {exc}") from exc
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise FixtureError(f"{source}: expected a mapping at the top level")
    try:
        return UnitTestFile.model_validate(doc)
    except ValidationError as exc:
        raise FixtureError(f"{source}: {exc}") from exc


def _sql_string(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _sql_float(value: float) -> str:
    if math.isnan(value):
        return "CAST('NaN' AS DOUBLE)"
    if math.isinf(value):
        return "CAST('inf' AS DOUBLE)" if value > 0 else "CAST('-inf' AS DOUBLE)"
    text = repr(float(value))
    if "e" in text:
        return f"CAST('{text}' AS DOUBLE)"
    return text


def render_load_script(series: List[FixtureSeries]) -> List[str]:
    statements = [
        "CREATE TABLE series (series_id BIGINT, metric VARCHAR);",
        "CREATE TABLE series_labels (series_id BIGINT, label VARCHAR, value VARCHAR);",
        "CREATE TABLE samples (series_id BIGINT, ts BIGINT, value DOUBLE, stale BOOLEAN);",
    ]
    for s in series:
        statements.append(f"-- {format_labels(s.labels)}")
        statements.append(f"INSERT INTO series VALUES ({s.series_id}, {_sql_string(s.metric)});")
        label_rows = ", ".join(
            f"({s.series_id}, {_sql_string(k)}, {_sql_string(v)})" for k, v in sorted(s.labels.items())
        )
        if label_rows:
            statements.append(f"INSERT INTO series_labels VALUES {label_rows};")
        if s.samples:
            sample_rows = ", ".join(
                f"({s.series_id}, {ts}, {_sql_float(value)}, {'true' if stale else 'false'})"
                for ts, value, stale in s.samples
            )
            statements.append(f"INSERT INTO samples VALUES {sample_rows};")
    return statements


def build_load_script(fixture: UnitTestFile) -> LoadScript:
    series: List[FixtureSeries] = []
    seen: Dict[tuple, FixtureSeries] = {}
    try:
        default_interval = (
            parse_duration(fixture.evaluation_interval) if fixture.evaluation_interval else DEFAULT_INTERVAL_MS
        )
    except ValueError as exc:
        raise FixtureError(f"evaluation_interval: {exc}") from exc
    base_interval = default_interval
    for group_idx, test in enumerate(fixture.tests):
        try:
            interval = parse_duration(test.interval) if test.interval else default_interval
        except ValueError as exc:
            raise FixtureError(f"test group {group_idx}: {exc}") from exc
        if group_idx == 0:
            base_interval = interval
        for item in test.input_series:
            try:
                labels = parse_series(item.series)
                samples = expand_values(item.values, interval)
            except (SelectorError, ValueError) as exc:
                raise FixtureError(f"series {item.series!r}: {exc}") from exc
            if not labels:
                raise FixtureError(f"series {item.series!r} has an empty label set")
            key = labels_key(labels)
            if key in seen:
                logger.warning(
                    "Series %s defined more than once; keeping the first definition", format_labels(labels)
                )
                continue
            entry = FixtureSeries(series_id=len(series) + 1, labels=labels, samples=samples)
            seen[key] = entry
            series.append(entry)
    return LoadScript(interval_ms=base_interval, statements=render_load_script(series), series=series)
