import contextlib
import io
import math
import os
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

import main as main_mod
from api import create_app, create_app_from_settings, format_timestamp, format_value, parse_time
from config import Settings
from fixtures import (
    FixtureError,
    build_load_script,
    expand_values,
    format_duration,
    load_fixture_file,
    parse_duration,
    parse_fixture,
)
from query_engine import FixtureEngine, QueryError, metric_type
from series_selector import SelectorError, parse_selector, parse_series

TESTDATA = Path(__file__).resolve().parent / "testdata"
FIXTURE = TESTDATA / "fixture.yml"

MINUTE = 60_000


class FixtureTestCase(unittest.TestCase):
    def test_durations(self) -> None:
        self.assertEqual(parse_duration("1m"), MINUTE)
        self.assertEqual(parse_duration("1h30m"), 90 * MINUTE)
        self.assertEqual(parse_duration("250ms"), 250)
        self.assertEqual(parse_duration("1d"), 24 * 60 * MINUTE)
        self.assertEqual(format_duration(MINUTE), "1m")
        self.assertEqual(format_duration(60 * MINUTE), "1h")
        self.assertEqual(format_duration(90 * MINUTE + 1500), "1h30m1s500ms")
        for bad in ("", "1", "m", "1.5m", "5 m"):
            with self.assertRaises(ValueError):
                parse_duration(bad)

    def test_expand_values(self) -> None:
        self.assertEqual(
            expand_values("0+10x3"),
            [(0, 0.0, False), (MINUTE, 10.0, False), (2 * MINUTE, 20.0, False), (3 * MINUTE, 30.0, False)],
        )
        self.assertEqual([v for _, v, _ in expand_values("10-2x2")], [10.0, 8.0, 6.0])
        self.assertEqual([v for _, v, _ in expand_values("1x2")], [1.0, 1.0, 1.0])
        # `_` skips a step without emitting a sample.
        self.assertEqual(expand_values("1 _ 3", 1000), [(0, 1.0, False), (2000, 3.0, False)])
        self.assertEqual(expand_values("_x3 4", 1000), [(3000, 4.0, False)])

    def test_expand_special_values(self) -> None:
        samples = expand_values("Inf -Inf NaN stale")
        self.assertEqual(samples[0][1], math.inf)
        self.assertEqual(samples[1][1], -math.inf)
        self.assertTrue(math.isnan(samples[2][1]))
        self.assertFalse(samples[2][2])
        self.assertTrue(samples[3][2])
        self.assertEqual(samples[3][0], 3 * MINUTE)

    def test_expand_rejects_garbage(self) -> None:
        with self.assertRaises(ValueError):
            expand_values("1 two 3")
        with self.assertRaises(ValueError):
            expand_values("{{schema:0 sum:5 count:4}}")

    def test_parse_series(self) -> None:
        self.assertEqual(
            parse_series('up{job="api", instance=\'a:1\'}'),
            {"__name__": "up", "job": "api", "instance": "a:1"},
        )
        self.assertEqual(parse_series('{__name__="up", env=""}'), {"__name__": "up"})
        with self.assertRaises(SelectorError):
            parse_series('up{job=~"a.*"}')
        with self.assertRaises(SelectorError):
            parse_series('up{job="a", job="b"}')

    def test_selector_matching(self) -> None:
        labels = {"__name__": "http_requests_total", "code": "503", "job": "api"}
        self.assertTrue(parse_selector('http_requests_total{code=~"5.."}').matches(labels))
        self.assertFalse(parse_selector('http_requests_total{code=~"5"}').matches(labels))
        self.assertTrue(parse_selector('{job!="db", code!~"2..",}').matches(labels))
        self.assertTrue(parse_selector("{env=``}").matches(labels))
        self.assertFalse(parse_selector('up{job="api"}').matches(labels))
        self.assertEqual(parse_selector('up{job="a\\"b"}').matchers[1].value, 'a"b')

    def test_selector_errors(self) -> None:
        for text in ("", "up{", 'up{job="x"', "up{job}", 'up{job="x"} extra', '{job=~"("}'):
            with self.assertRaises(SelectorError, msg=text):
                parse_selector(text)
        with self.assertRaises(SelectorError):
            parse_selector('{job=~".*"}').validate_for_query()
        parse_selector('{job=~".+"}').validate_for_query()

    def test_build_load_script(self) -> None:
        with self.assertLogs("fixtures", level="WARNING") as logs:
            script = build_load_script(load_fixture_file(FIXTURE))
        self.assertIn("defined more than once", logs.output[0])
        self.assertEqual(len(script.series), 7)
        self.assertEqual([s.series_id for s in script.series], list(range(1, 8)))
        self.assertEqual(script.interval_ms, MINUTE)
        first = script.series[0]
        self.assertEqual(first.labels, {"__name__": "up", "job": "api", "instance": "api-0:9090"})
        self.assertEqual([v for _, v, _ in first.samples], [1.0, 1.0, 1.0, 0.0, 0.0])
        text = script.text
        self.assertTrue(text.startswith("CREATE TABLE series "))
        self.assertIn("CAST('NaN' AS DOUBLE), true", text)
        self.assertIn("CAST('inf' AS DOUBLE)", text)
        self.assertIn("INSERT INTO series_labels VALUES (1, '__name__', 'up')", text)

    def test_group_interval(self) -> None:
        fixture = parse_fixture(
            """
tests:
  - interval: 30s
    input_series:
      - series: "a"
        values: "1 2"
"""
        )
        script = build_load_script(fixture)
        self.assertEqual([ts for ts, _, _ in script.series[0].samples], [0, 30_000])
        self.assertEqual(script.interval_ms, 30_000)

    def test_sql_quoting(self) -> None:
        fixture = parse_fixture(
            """
tests:
  - input_series:
      - series: 'a{note="it''s"}'
        values: 1
"""
        )
        script = build_load_script(fixture)
        self.assertIn("'it''s'", script.text)

    def test_fixture_errors(self) -> None:
        with self.assertRaises(FixtureError):
            load_fixture_file(TESTDATA / "broken.yml")
        with self.assertRaises(FixtureError):
            load_fixture_file(TESTDATA / "missing.yml")
        with self.assertRaises(FixtureError):
            parse_fixture("- just\n- a list\n")
        with self.assertRaises(FixtureError):
            build_load_script(parse_fixture("tests: [{interval: soon, input_series: []}]"))
        with self.assertRaises(FixtureError):
            build_load_script(parse_fixture("tests: [{input_series: [{series: 'a', values: '1 x'}]}]"))

    def test_series_validated_on_load(self) -> None:
        for series in ('up{job="api"', "{}", '{env=""}'):
            with self.assertRaises(FixtureError, msg=series):
                parse_fixture(f"tests: [{{input_series: [{{series: '{series}', values: 1}}]}}]")

    def test_evaluation_interval_is_default_group_interval(self) -> None:
        fixture = parse_fixture(
            """
evaluation_interval: 15s
tests:
  - input_series:
      - series: "a"
        values: "1 2"
  - interval: 1m
    input_series:
      - series: "b"
        values: "1 2"
"""
        )
        script = build_load_script(fixture)
        self.assertEqual([ts for ts, _, _ in script.series[0].samples], [0, 15_000])
        self.assertEqual([ts for ts, _, _ in script.series[1].samples], [0, MINUTE])
        self.assertEqual(script.interval_ms, 15_000)
        with self.assertRaises(FixtureError):
            build_load_script(parse_fixture("evaluation_interval: soon\ntests: []"))

    def test_empty_fixture(self) -> None:
        script = build_load_script(parse_fixture(""))
        self.assertEqual(script.series, [])
        self.assertEqual(len(script.statements), 3)


class EngineTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.engine = FixtureEngine(build_load_script(load_fixture_file(FIXTURE)))

    def test_selector_query(self) -> None:
        samples = self.engine.instant_query("up", MINUTE)
        self.assertEqual(
            [s.labels["instance"] for s in samples],
            ["api-0:9090", "api-1:9090"],
        )
        self.assertEqual([s.value for s in samples], [1.0, 1.0])
        self.assertTrue(all(s.ts == MINUTE for s in samples))

    def test_stale_series_is_absent(self) -> None:
        self.assertEqual(self.engine.instant_query('up{job="db"}', MINUTE), [])
        self.assertEqual(len(self.engine.instant_query('up{job="db"}', 0)), 1)

    def test_regex_selector(self) -> None:
        samples = self.engine.instant_query('http_requests_total{code=~"5.."}', MINUTE)
        self.assertEqual(len(samples), 1)
        self.assertEqual(samples[0].labels["code"], "500")
        self.assertAlmostEqual(samples[0].value, 6.0)

    def test_lookback_and_gaps(self) -> None:
        self.assertEqual(self.engine.instant_query("queue_depth", MINUTE)[0].value, 5.0)
        self.assertEqual(self.engine.instant_query("queue_depth", 2 * MINUTE)[0].value, 7.5)
        # Last sample at 2m; the 5m lookback window has passed by 8m.
        self.assertEqual(len(self.engine.instant_query("queue_depth", 6 * MINUTE)), 1)
        self.assertEqual(self.engine.instant_query("queue_depth", 8 * MINUTE), [])

    def test_first_definition_wins(self) -> None:
        samples = self.engine.instant_query('up{instance="api-0:9090"}', 0)
        self.assertEqual(samples[0].value, 1.0)

    def test_special_values(self) -> None:
        temps = self.engine.instant_query("node_temperature_celsius", 2 * MINUTE)
        self.assertEqual(temps[0].value, math.inf)

    def test_numeric_literal(self) -> None:
        samples = self.engine.instant_query("42", MINUTE)
        self.assertEqual(len(samples), 1)
        self.assertEqual(samples[0].labels, {})
        self.assertEqual(samples[0].value, 42.0)

    def test_sql_with_series_id(self) -> None:
        samples = self.engine.instant_query(
            "SELECT series_id, value FROM instant WHERE metric = 'http_requests_total' ORDER BY series_id",
            MINUTE,
        )
        self.assertEqual([s.labels["code"] for s in samples], ["200", "500"])
        self.assertEqual(samples[0].labels["__name__"], "http_requests_total")
        self.assertEqual([s.value for s in samples], [60.0, 6.0])

    def test_sql_aggregation(self) -> None:
        samples = self.engine.instant_query(
            "SELECT metric, sum(value) AS value FROM instant GROUP BY metric ORDER BY metric",
            MINUTE,
        )
        by_name = {s.labels["__name__"]: s.value for s in samples}
        self.assertEqual(by_name["http_requests_total"], 66.0)
        self.assertEqual(by_name["up"], 2.0)

    def test_sql_single_column_is_scalar(self) -> None:
        samples = self.engine.instant_query("SELECT sum(value) FROM instant WHERE metric = 'up'", MINUTE)
        self.assertEqual(len(samples), 1)
        self.assertEqual(samples[0].labels, {})
        self.assertEqual(samples[0].value, 2.0)

    def test_sql_extra_columns_become_labels(self) -> None:
        samples = self.engine.instant_query(
            "SELECT 'fixture' AS source, 3 AS shard, value FROM instant WHERE metric = 'queue_depth'",
            MINUTE,
        )
        self.assertEqual(samples[0].labels, {"source": "fixture", "shard": "3"})

    def test_sql_boolean_labels(self) -> None:
        samples = self.engine.instant_query(
            "SELECT true AS canary, value FROM instant WHERE metric = 'queue_depth'",
            MINUTE,
        )
        self.assertEqual(samples[0].labels, {"canary": "true"})

    def test_colon_metric_names_are_selectors(self) -> None:
        self.assertEqual(self.engine.instant_query("with:requests:rate5m", MINUTE), [])
        self.assertEqual(self.engine.instant_query('select:errors{job="api"}', MINUTE), [])
        self.assertEqual(len(self.engine.instant_query("SELECT\n1.0 AS value", MINUTE)), 1)

    def test_query_errors(self) -> None:
        for expr in (
            "",
            "up{",
            '{job=~".*"}',
            "SELECT * FROM no_such_table",
            "SELECT metric, ts FROM instant",
            "SELECT value FROM instant",
            "SELECT value, metric || '!' FROM instant",
            "SELECT 'abc' AS series_id, 1.0 AS value",
        ):
            with self.assertRaises(QueryError, msg=expr):
                self.engine.instant_query(expr, MINUTE)

    def test_counter_rate_udwf(self) -> None:
        rows = self.engine.run_sql(
            "SELECT ts, counter_rate(value, ts) OVER (ORDER BY ts) AS rate "
            "FROM samples WHERE series_id = 4 ORDER BY ts",
            MINUTE,
        )
        self.assertIsNone(rows[0]["rate"])
        self.assertAlmostEqual(rows[1]["rate"], 1.0)
        self.assertAlmostEqual(rows[-1]["rate"], 1.0)

    def test_diff_udwf(self) -> None:
        rows = self.engine.run_sql(
            "SELECT ts, diff(value, 2) OVER (ORDER BY ts) AS d FROM samples WHERE series_id = 5 ORDER BY ts",
            MINUTE,
        )
        self.assertIsNone(rows[1]["d"])
        self.assertAlmostEqual(rows[2]["d"], 12.0)

    def test_clamp_udf(self) -> None:
        samples = self.engine.instant_query(
            "SELECT series_id, clamp(value, 0.0, 50.0) AS value FROM instant WHERE series_id = 4",
            MINUTE,
        )
        self.assertEqual(samples[0].value, 50.0)

    def test_label_index(self) -> None:
        self.assertEqual(self.engine.label_values("job"), ["api", "db"])
        self.assertEqual(
            self.engine.label_values("__name__"),
            ["http_requests_total", "node_temperature_celsius", "queue_depth", "up"],
        )
        self.assertEqual(self.engine.label_values("nope"), [])
        self.assertEqual(
            self.engine.label_names(),
            ["__name__", "code", "instance", "job", "queue", "sensor"],
        )

    def test_series_lookup(self) -> None:
        found = self.engine.series(['up{job="api"}', "queue_depth"])
        self.assertEqual(len(found), 3)
        self.assertIn({"__name__": "queue_depth", "queue": "emails"}, found)
        with self.assertRaises(QueryError):
            self.engine.series(["up{"])

    def test_metadata(self) -> None:
        meta = self.engine.metadata()
        self.assertEqual(meta["http_requests_total"], [{"type": "counter", "help": "", "unit": ""}])
        self.assertEqual(meta["up"][0]["type"], "gauge")
        self.assertEqual(list(self.engine.metadata(metric="up")), ["up"])
        self.assertEqual(len(self.engine.metadata(limit=2)), 2)
        self.assertEqual(metric_type("request_duration_seconds_bucket"), "histogram")

    def test_empty_engine(self) -> None:
        engine = FixtureEngine(build_load_script(parse_fixture("")))
        self.assertEqual(engine.label_names(), [])
        self.assertEqual(engine.instant_query("up", MINUTE), [])
        self.assertEqual(engine.instant_query("SELECT series_id, value FROM instant", MINUTE), [])


class ApiTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.engine = FixtureEngine(build_load_script(load_fixture_file(FIXTURE)))
        cls.client = TestClient(create_app(cls.engine, Settings()))

    def test_instant_query(self) -> None:
        resp = self.client.get("/api/v1/query", params={"query": 'up{instance="api-1:9090"}'})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "success")
        self.assertEqual(body["data"]["resultType"], "vector")
        self.assertEqual(
            body["data"]["result"],
            [{"metric": {"__name__": "up", "job": "api", "instance": "api-1:9090"}, "value": [60, "1"]}],
        )

    def test_instant_query_post_form(self) -> None:
        resp = self.client.post("/api/v1/query", data={"query": "queue_depth"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["result"][0]["value"], [60, "5"])

    def test_request_time_ignored_by_default(self) -> None:
        resp = self.client.get("/api/v1/query", params={"query": "queue_depth", "time": "120"})
        self.assertEqual(resp.json()["data"]["result"][0]["value"], [60, "5"])

    def test_request_time_honored(self) -> None:
        client = TestClient(create_app(self.engine, Settings(honor_request_time=True)))
        resp = client.get("/api/v1/query", params={"query": "queue_depth", "time": "120.5"})
        self.assertEqual(resp.json()["data"]["result"][0]["value"], [120.5, "7.5"])

    def test_empty_result(self) -> None:
        resp = self.client.get("/api/v1/query", params={"query": "does_not_exist"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["result"], [])

    def test_query_errors(self) -> None:
        resp = self.client.get("/api/v1/query")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["errorType"], "bad_data")

        resp = self.client.get("/api/v1/query", params={"query": "up{"})
        self.assertEqual(resp.status_code, 500)
        body = resp.json()
        self.assertEqual(body["status"], "error")
        self.assertEqual(body["errorType"], "execution")

        resp = self.client.get("/api/v1/query", params={"query": "up", "time": "yesterday"})
        self.assertEqual(resp.status_code, 400)

    def test_bad_series_id_column_returns_error_envelope(self) -> None:
        resp = self.client.get("/api/v1/query", params={"query": "SELECT 'abc' AS series_id, 1.0 AS value"})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["status"], "error")
        self.assertEqual(resp.json()["errorType"], "execution")

    def test_label_values(self) -> None:
        resp = self.client.get("/api/v1/label/job/values")
        self.assertEqual(resp.json(), {"status": "success", "data": ["api", "db"]})
        resp = self.client.get("/api/v1/label/unknown/values")
        self.assertEqual(resp.json()["data"], [])
        resp = self.client.get("/api/v1/label/bad-name/values")
        self.assertEqual(resp.status_code, 400)

    def test_labels(self) -> None:
        resp = self.client.get("/api/v1/labels")
        self.assertIn("__name__", resp.json()["data"])

    def test_series(self) -> None:
        resp = self.client.get("/api/v1/series", params={"match[]": ['up{job="db"}']})
        self.assertEqual(resp.json()["data"], [{"__name__": "up", "job": "db", "instance": "db-0:5432"}])
        resp = self.client.post("/api/v1/series", data={"match[]": "queue_depth"})
        self.assertEqual(len(resp.json()["data"]), 1)
        self.assertEqual(self.client.get("/api/v1/series").status_code, 400)
        self.assertEqual(self.client.get("/api/v1/series", params={"match[]": "up{"}).status_code, 400)

    def test_metadata(self) -> None:
        resp = self.client.get("/api/v1/metadata", params={"metric": "http_requests_total"})
        self.assertEqual(
            resp.json()["data"],
            {"http_requests_total": [{"type": "counter", "help": "", "unit": ""}]},
        )
        self.assertEqual(self.client.get("/api/v1/metadata", params={"limit": "x"}).status_code, 400)

    def test_cors(self) -> None:
        resp = self.client.get(
            "/api/v1/query", params={"query": "up"}, headers={"Origin": "http://grafana.local:3000"}
        )
        self.assertEqual(resp.headers["access-control-allow-origin"], "http://grafana.local:3000")
        preflight = self.client.options(
            "/api/v1/query",
            headers={"Origin": "http://grafana.local:3000", "Access-Control-Request-Method": "POST"},
        )
        self.assertEqual(preflight.status_code, 200)
        self.assertIn("POST", preflight.headers["access-control-allow-methods"])

    def test_health_and_buildinfo(self) -> None:
        self.assertEqual(self.client.get("/-/healthy").status_code, 200)
        self.assertEqual(self.client.get("/-/ready").status_code, 200)
        self.assertEqual(self.client.get("/api/v1/status/buildinfo").json()["status"], "success")

    def test_formatting(self) -> None:
        self.assertEqual(format_value(1.0), "1")
        self.assertEqual(format_value(1.5), "1.5")
        self.assertEqual(format_value(0.1), "0.1")
        self.assertEqual(format_value(1e20), "100000000000000000000")
        self.assertEqual(format_value(float("nan")), "NaN")
        self.assertEqual(format_value(float("inf")), "+Inf")
        self.assertEqual(format_value(float("-inf")), "-Inf")
        self.assertEqual(format_timestamp(60_000), 60)
        self.assertEqual(format_timestamp(60_500), 60.5)
        self.assertEqual(parse_time("60"), 60_000)
        self.assertEqual(parse_time("1970-01-01T00:02:00Z"), 120_000)
        self.assertEqual(parse_time("1970-01-01T00:00:00.5Z"), 500)
        self.assertEqual(parse_time("1970-01-01T00:01:00.123456789Z"), 60_123)
        self.assertEqual(parse_time("1970-01-01T01:00:00+01:00"), 0)
        with self.assertRaises(ValueError):
            parse_time("NaN")

    def test_app_requires_fixture(self) -> None:
        with self.assertRaises(ValueError):
            create_app_from_settings(Settings())
        with self.assertRaises(FixtureError):
            create_app_from_settings(Settings(fixture_file=str(TESTDATA / "broken.yml")))


class ConfigTestCase(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = Settings.from_env({})
        self.assertIsNone(settings.fixture_file)
        self.assertEqual(settings.eval_time_ms, MINUTE)
        self.assertEqual(settings.lookback_ms, 5 * MINUTE)
        self.assertFalse(settings.honor_request_time)
        self.assertEqual(settings.port, 9090)

    def test_from_env(self) -> None:
        settings = Settings.from_env(
            {
                "FIXTURE_FILE": "f.yml",
                "FIXTURE_EVAL_TIME": "10m",
                "FIXTURE_LOOKBACK": "1h",
                "FIXTURE_HONOR_REQUEST_TIME": "yes",
                "PORT": "8000",
                "LOG_LEVEL": "debug",
            }
        )
        self.assertEqual(settings.fixture_file, "f.yml")
        self.assertEqual(settings.eval_time_ms, 10 * MINUTE)
        self.assertEqual(settings.lookback_ms, 60 * MINUTE)
        self.assertTrue(settings.honor_request_time)
        self.assertEqual(settings.port, 8000)
        self.assertEqual(settings.log_level, "DEBUG")

    def test_invalid_env(self) -> None:
        for env in (
            {"PORT": "http"},
            {"FIXTURE_HONOR_REQUEST_TIME": "maybe"},
            {"FIXTURE_LOOKBACK": "soon"},
            {"CORS_ORIGIN": "("},
            {"LOG_LEVEL": "loud"},
        ):
            with self.assertRaises(ValueError, msg=env):
                Settings.from_env(env)

    def test_cli_overrides_env(self) -> None:
        defaults = Settings.from_env({"FIXTURE_FILE": "env.yml", "FIXTURE_EVAL_TIME": "2m"})
        args = main_mod.parse_args(["--fixture-file", "cli.yml", "--lookback", "30s"], defaults)
        settings = main_mod.settings_from_args(args, defaults)
        self.assertEqual(settings.fixture_file, "cli.yml")
        self.assertEqual(settings.eval_time_ms, 2 * MINUTE)
        self.assertEqual(settings.lookback_ms, 30_000)

    def test_cli_rejects_invalid_values(self) -> None:
        defaults = Settings.from_env({})
        for argv in (["--log-level", "loud"], ["--cors-origin", "("]):
            args = main_mod.parse_args(argv, defaults)
            with self.assertRaises(ValueError, msg=argv):
                main_mod.settings_from_args(args, defaults)

    def test_dump_load_script(self) -> None:
        out = io.StringIO()
        with mock.patch.dict(os.environ, {}, clear=True), contextlib.redirect_stdout(out):
            code = main_mod.main(["--fixture-file", str(FIXTURE), "--dump-load-script"])
        self.assertEqual(code, 0)
        self.assertIn("CREATE TABLE samples", out.getvalue())

    def test_missing_fixture_file(self) -> None:
        err = io.StringIO()
        with mock.patch.dict(os.environ, {}, clear=True), contextlib.redirect_stderr(err):
            code = main_mod.main([])
        self.assertEqual(code, 2)


if __name__ == "__main__":
    unittest.main()
