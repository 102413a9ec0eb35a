"""Tests for JSON / CSV / markdown export."""

from __future__ import annotations

import csv
import io

import pytest

from healthwatch.export import (
    OUTAGE_COLUMNS,
    SAMPLE_COLUMNS,
    build_export,
    markdown_report,
    outages_csv,
    render_export,
    samples_csv,
)
from healthwatch.monitor.ledger import OutageLedger
from healthwatch.monitor.models import Sample, SampleOutcome
from healthwatch.storage.memory import InMemoryStorage

from conftest import T0, make_channel


def _sample(channel_id: str, ts: float, ok: bool = True, error: str | None = None) -> Sample:
    return Sample(
        channel_id=channel_id,
        timestamp=ts,
        outcome=SampleOutcome.SUCCESS if ok else SampleOutcome.FAILURE,
        latency_ms=20.0 if ok else None,
        error=error,
    )


@pytest.fixture
def history():
    storage = InMemoryStorage()
    ledger = OutageLedger(storage)
    api = make_channel("api", name="Public API")
    db = make_channel("db", type="tcp", target="db.internal:5432")

    storage.append_sample(_sample("api", T0))
    storage.append_sample(_sample("api", T0 + 60, ok=False, error="Connection refused"))
    storage.append_sample(_sample("api", T0 + 120))
    storage.append_sample(_sample("db", T0 + 30))

    ledger.open("api", T0 + 50, T0 + 60, "Connection refused", 3)
    ledger.close("api", T0 + 120)
    return [api, db], storage, ledger


def _rows(text: str) -> list[list[str]]:
    return list(csv.reader(io.StringIO(text)))


class TestBuildExport:
    def test_structure(self, history) -> None:
        channels, storage, ledger = history
        export = build_export(channels, storage, ledger, now=T0 + 200)

        assert export["metadata"]["window_start"] is None
        assert export["metadata"]["exported_at"].startswith("2023-11-14")
        assert list(export["channels"]) == ["api", "db"]

        api = export["channels"]["api"]
        assert api["channel"]["id"] == "api"
        assert len(api["samples"]) == 3
        assert api["outages"][0]["reason"] == "Connection refused"
        assert api["statistics"]["outage_count"] == 1
        assert export["channels"]["db"]["outages"] == []

    def test_window(self, history) -> None:
        channels, storage, ledger = history
        export = build_export(channels, storage, ledger, since=T0 + 100, now=T0 + 200)

        assert len(export["channels"]["api"]["samples"]) == 1
        assert export["channels"]["db"]["samples"] == []
        assert export["metadata"]["window_start"] is not None


class TestCsv:
    def test_samples(self, history) -> None:
        channels, storage, _ = history
        samples = {c.id: storage.samples_since(c.id, 0.0) for c in channels}

        rows = _rows(samples_csv(channels, samples))

        assert rows[0] == SAMPLE_COLUMNS
        assert len(rows) == 5
        failed = rows[2]
        assert failed[1:5] == ["api", "Public API", "https", "failure"]
        assert failed[5] == ""
        assert failed[6] == "Connection refused"

    def test_outages(self, history) -> None:
        _, _, ledger = history
        rows = _rows(outages_csv(ledger.list_outages()))

        assert rows[0] == OUTAGE_COLUMNS
        assert rows[1][1] == "api"
        assert float(rows[1][7]) == 60.0
        assert float(rows[1][8]) == 70.0

    def test_outages_filtered_to_channels(self, history) -> None:
        channels, storage, ledger = history
        text = render_export("csv", "outages", [channels[1]], storage, ledger)
        assert _rows(text) == [OUTAGE_COLUMNS]


class TestMarkdown:
    def test_report(self, history) -> None:
        channels, storage, ledger = history
        report = markdown_report(build_export(channels, storage, ledger, now=T0 + 200))

        assert report.startswith("# Health Watch Report")
        assert "| api | 66.7% | 1 |" in report
        assert "| db | 100.0% | 0 |" in report
        assert "## Outage Log" in report
        assert "Connection refused |" in report

    def test_empty_outage_log(self, history) -> None:
        channels, storage, ledger = history
        report = render_export("markdown", "samples", [channels[1]], storage, ledger, now=T0 + 200)
        assert "No outages in this window." in report


class TestRender:
    def test_json_is_dict(self, history) -> None:
        channels, storage, ledger = history
        result = render_export("json", "samples", channels, storage, ledger, now=T0 + 200)
        assert isinstance(result, dict)

    @pytest.mark.parametrize("fmt,kind", [("xml", "samples"), ("csv", "guards")])
    def test_unknown(self, history, fmt, kind) -> None:
        channels, storage, ledger = history
        with pytest.raises(ValueError):
            render_export(fmt, kind, channels, storage, ledger)
