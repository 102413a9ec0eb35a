"""Per-channel statistics derived from samples and outages."""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Sequence
from typing import Any

from healthwatch.monitor.models import Outage, Sample, SampleOutcome


def percentile(values: Sequence[float], pct: float) -> float | None:
    """Nearest-rank percentile of ``values`` (0 < pct <= 100)."""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[min(rank, len(ordered)) - 1]


def channel_stats(
    samples: Sequence[Sample],
    outages: Sequence[Outage],
    now: float | None = None,
) -> dict[str, Any]:
    """Summarise availability, outages and latency for one channel.

    Skipped samples carry no verdict and are left out of availability.
    Open outages count towards ``outage_count`` and, when ``now`` is given,
    towards ``longest_outage_sec``; MTTR only uses closed outages.
    """
    judged = [s for s in samples if s.outcome != SampleOutcome.SKIPPED]
    ok = [s for s in judged if s.outcome == SampleOutcome.SUCCESS]
    skipped = len(samples) - len(judged)

    availability = round(len(ok) / len(judged) * 100, 2) if judged else 100.0

    latencies = [s.latency_ms for s in ok if s.latency_ms is not None]
    latency: dict[str, float | None] = {
        "min": min(latencies) if latencies else None,
        "avg": round(sum(latencies) / len(latencies), 1) if latencies else None,
        "p50": percentile(latencies, 50),
        "p95": percentile(latencies, 95),
        "max": max(latencies) if latencies else None,
    }

    closed = [o for o in outages if not o.is_open and o.actual_duration is not None]
    mttr = round(sum(o.actual_duration for o in closed) / len(closed), 1) if closed else None

    spans = [o.actual_duration for o in closed]
    if now is not None:
        spans += [max(0.0, now - o.first_failure_time) for o in outages if o.is_open]
    longest = round(max(spans), 1) if spans else None

    reasons = Counter(s.error for s in judged if s.outcome == SampleOutcome.FAILURE and s.error)
    top_reason = reasons.most_common(1)[0][0] if reasons else None

    return {
        "sample_count": len(samples),
        "skipped_count": skipped,
        "availability_pct": availability,
        "outage_count": len(outages),
        "open_outage": any(o.is_open for o in outages),
        "mttr_sec": mttr,
        "longest_outage_sec": longest,
        "latency_ms": latency,
        "top_failure_reason": top_reason,
    }
