from pathlib import Path

from fixtures import build_load_script, load_fixture_file
from query_engine import FixtureEngine

FIXTURE = Path(__file__).resolve().parent / "testdata" / "fixture.yml"


def main() -> None:
    script = build_load_script(load_fixture_file(FIXTURE))
    print("Load script:")
    print(script.text)

    engine = FixtureEngine(script)
    eval_ms = 60_000

    print("Selector up{job=\"api\"}:")
    for sample in engine.instant_query('up{job="api"}', eval_ms):
        print(sample)

    sql = """
SELECT metric, sum(value) AS value
FROM instant
GROUP BY metric
ORDER BY metric
"""
    print("\nSum per metric:")
    for sample in engine.instant_query(sql, eval_ms):
        print(sample)

    rate_sql = """
SELECT series_id, ts, counter_rate(value, ts) OVER (PARTITION BY series_id ORDER BY ts) AS rate
FROM samples
WHERE series_id IN (SELECT series_id FROM series WHERE metric = 'http_requests_total')
ORDER BY series_id, ts
"""
    print("\nPer-second request rates:")
    for row in engine.run_sql(rate_sql, eval_ms):
        print(row)


if __name__ == "__main__":
    main()
