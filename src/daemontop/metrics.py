"""Container metrics derived from raw cumulative counters."""

import math
from typing import Any, Mapping, Sequence

from daemontop.models import ContainerSpec, DerivedMetrics, HostCapacity, StatsSample

BYTES_PER_MB = 1_000_000  # Decimal megabytes, not MiB


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves going up."""
    return math.floor(value + 0.5)


def clamp_percent(value: int) -> int:
    """Bound a percentage to [0, 100]."""
    return max(0, min(100, value))


def compute_cpu_percent(
    samples: Sequence[StatsSample],
    spec: ContainerSpec,
    capacity: HostCapacity,
) -> int:
    """
    CPU usage over the interval between the two most recent samples.

    Degenerate inputs (fewer than two samples, no CPU spec, no cores,
    non-positive interval) give 0.
    """
    if not spec.has_cpu or len(samples) < 2 or capacity.num_cores <= 0:
        return 0

    cur, prev = samples[-1], samples[-2]
    interval_ns = cur.timestamp_ns - prev.timestamp_ns
    if interval_ns <= 0:
        return 0

    raw_usage = cur.cpu_total_ns - prev.cpu_total_ns
    cores_used = raw_usage / interval_ns
    return clamp_percent(round_half_up(cores_used / capacity.num_cores * 100))


def compute_container_metrics(
    samples: Sequence[StatsSample],
    spec: ContainerSpec,
    capacity: HostCapacity,
) -> DerivedMetrics:
    """
    Convert an ordered (most-recent-last) sample sequence into DerivedMetrics.

    Memory fields are omitted (None) when the container has no memory spec.
    The reported limit saturates to the host memory capacity.
    """
    cpu_percent = compute_cpu_percent(samples, spec, capacity)
    if not spec.has_memory:
        return DerivedMetrics(cpu_usage_percent=cpu_percent)

    limit = max(0, min(spec.memory_limit_bytes, capacity.memory_capacity_bytes))
    usage_bytes = samples[-1].memory_usage_bytes if samples else 0

    if limit == 0:
        memory_percent = 0
    else:
        memory_percent = clamp_percent(round_half_up(usage_bytes / limit * 100))

    return DerivedMetrics(
        cpu_usage_percent=cpu_percent,
        memory_usage=round_half_up(usage_bytes / BYTES_PER_MB),
        memory_limit=limit,
        memory_usage_percent=memory_percent,
    )


def metrics_from_payload(payload: Mapping[str, Any], capacity: HostCapacity) -> DerivedMetrics:
    """
    Compute metrics from a `{spec, stats}` container payload.

    Only the two most recent samples are parsed.

    Raises:
        ValueError: If the payload is malformed.
    """
    try:
        spec = ContainerSpec.from_dict(payload["spec"])
        raw_samples = list(payload.get("stats") or [])
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Malformed container stats: {e}") from e

    samples = [StatsSample.from_dict(raw) for raw in raw_samples[-2:]]
    return compute_container_metrics(samples, spec, capacity)
