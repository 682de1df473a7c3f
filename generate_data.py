"""
Data Generation for the Table Load Benchmark

This module generates the synthetic time series that every benchmark scenario
loads. Each record carries an epoch-millisecond timestamp and a monotonic
value, one record per increment, ending at the current wall-clock time.
"""

import time
from typing import Optional

import numpy as np
import pandas as pd

# Configuration Constants
NUM_DAYS = 10
SECONDS_PER_DAY = 24 * 60 * 60
TS_INCREMENT_MS = 1000  # entry for each 1 sec


def count_entries(num_days: int = NUM_DAYS, increment_ms: int = TS_INCREMENT_MS) -> int:
    """Number of records covering ``num_days`` at one record per increment."""
    if increment_ms <= 0:
        raise ValueError(f"increment_ms must be positive, got {increment_ms}")
    return (SECONDS_PER_DAY * num_days * 1000) // increment_ms


def generate_data(
    num_days: int = NUM_DAYS,
    increment_ms: int = TS_INCREMENT_MS,
    end_ts_ms: Optional[int] = None,
    align_ms: Optional[int] = None,
) -> pd.DataFrame:
    """
    Generate the synthetic time series.

    Args:
        num_days: Days of data to cover
        increment_ms: Spacing between consecutive timestamps
        end_ts_ms: End of the series in epoch milliseconds (defaults to now)
        align_ms: When set, the end timestamp is floored to a multiple of this
            width so that fixed-width buckets line up with the series

    Returns:
        DataFrame with int64 columns ``ts`` (epoch ms) and ``value`` (0-based index)
    """
    if end_ts_ms is None:
        end_ts_ms = int(time.time() * 1000)
    if align_ms:
        end_ts_ms -= end_ts_ms % align_ms

    num_entries = count_entries(num_days, increment_ms)
    start_ts_ms = end_ts_ms - increment_ms * num_entries

    values = np.arange(num_entries, dtype=np.int64)
    timestamps = start_ts_ms + values * increment_ms

    return pd.DataFrame({
        'ts': timestamps,
        'value': values,
    })
