#!/usr/bin/env python3
"""
Quick-and-dirty instant query micro-benchmark.

It times `FixtureEngine.instant_query` against a fixture file and reports latency stats.
Without a fixture file it synthesizes one with `--series` gauge series so the
benchmark runs standalone.
"""

import argparse
import math
import statistics
import time
from pathlib import Path
from typing import List, Optional

ROOT = Path(__file__).resolve().parent.parent
# Ensure repo root is importable when running from scripts/
import sys

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fixtures import InputSeries, UnitTest, UnitTestFile, build_load_script, load_fixture_file
from query_engine import FixtureEngine


def synthetic_fixture(series: int, points: int) -> UnitTestFile:
    """
    Build an in-memory unit-test file with `series` gauges of `points` samples each.
    """
    inputs = []
    for idx in range(series):
        values = " ".join(f"{math.sin(i / 25.0) * 100 + i % 50:.3f}" for i in range(points))
        inputs.append(InputSeries(series=f'perf_metric{{scenario="perf", shard="{idx}"}}', values=values))
    return UnitTestFile(tests=[UnitTest(input_series=inputs)])


def time_query(engine: FixtureEngine, expr: str, eval_ms: int, iterations: int) -> List[float]:
    durations_ms: List[float] = []
    samples = []
    for _ in range(iterations):
        t0 = time.perf_counter()
        samples = engine.instant_query(expr, eval_ms)
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        durations_ms.append(elapsed_ms)
    print(f"Last query returned {len(samples)} samples")
    return durations_ms


def summarize(label: str, durations_ms: List[float]) -> None:
    if not durations_ms:
        print(f"{label}: no samples")
        return
    ordered = sorted(durations_ms)
    p95 = ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))]
    print(
        f"{label}: n={len(ordered)} min={ordered[0]:.2f}ms "
        f"p50={statistics.median(ordered):.2f}ms p95={p95:.2f}ms max={ordered[-1]:.2f}ms"
    )


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Benchmark instant queries against fixture data.")
    parser.add_argument("--fixture-file", help="Unit-test YAML file (default: synthetic data)", default=None)
    parser.add_argument("--query", default='perf_metric{scenario="perf"}', help="Query to time")
    parser.add_argument("--iterations", type=int, default=10, help="Number of timed query runs (default: 10)")
    parser.add_argument("--series", type=int, default=50, help="Synthetic series count (default: 50)")
    parser.add_argument("--points", type=int, default=500, help="Synthetic samples per series (default: 500)")
    parser.add_argument("--eval-ms", type=int, default=60_000, help="Evaluation time in ms (default: 60000)")
    args = parser.parse_args(argv)

    fixture = load_fixture_file(args.fixture_file) if args.fixture_file else synthetic_fixture(args.series, args.points)
    t0 = time.perf_counter()
    engine = FixtureEngine(build_load_script(fixture))
    print(f"Loaded fixture in {(time.perf_counter() - t0) * 1000.0:.2f}ms")

    print(f"Benchmarking {args.query!r} at {args.eval_ms}ms")
    # Warmup run (not timed)
    engine.instant_query("1", args.eval_ms)

    durations = time_query(engine, args.query, args.eval_ms, args.iterations)
    summarize("Query latency", durations)


if __name__ == "__main__":
    main()
