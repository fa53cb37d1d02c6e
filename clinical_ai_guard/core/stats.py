"""
Latency statistics.

Summaries over the bounded latency sample buffers kept by the monitor.
"""

from typing import Dict, List, Optional, Sequence


def percentile(values: Sequence[float], pct: float) -> float:
    """Exact percentile using linear interpolation.

    Same method as numpy.percentile with interpolation='linear'.

    Args:
        values: Numeric samples
        pct: Percentile to compute (0-100)

    Returns:
        Interpolated percentile value

    Raises:
        ValueError: If values is empty or pct is out of range
    """
    if not values:
        raise ValueError("Values list cannot be empty")
    if pct < 0 or pct > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(values)
    position = (pct / 100.0) * (len(sorted_values) - 1)

    lower_index = int(position)
    upper_index = min(lower_index + 1, len(sorted_values) - 1)
    fraction = position - lower_index

    lower_value = sorted_values[lower_index]
    return lower_value + fraction * (sorted_values[upper_index] - lower_value)


def summarize_latency(aggregate: Dict[str, float], samples: Optional[List[float]] = None) -> Dict[str, float]:
    """Build the per-task latency block for metrics.

    Args:
        aggregate: Running ``min``/``max``/``sum``/``count`` for the period
        samples: Most recent latency samples for percentiles

    Returns:
        Mapping with min, max, avg, samples and, when samples exist, p50/p90
    """
    count = aggregate["count"]
    summary = {
        "min": aggregate["min"],
        "max": aggregate["max"],
        "avg": round(aggregate["sum"] / count, 2),
        "samples": count,
    }
    if samples:
        summary["p50"] = round(percentile(samples, 50), 2)
        summary["p90"] = round(percentile(samples, 90), 2)
    return summary
