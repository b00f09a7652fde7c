"""
Tab-separated input tables.

Two layouts are accepted:
- events:     read_id, contig, position, signal[, context, dwell, strand]
- aggregated: read_id, contig, position, context, value[, n_events, strand]

Missing required columns raise ValueError. Malformed values inside rows are
passed through as-is (non-numeric becomes NaN) and left to the aggregator to
count and skip.
"""

import math
from typing import Iterator

import numpy as np
import pandas as pd

from smaccess.core.records import RawEvent


EVENT_COLUMNS = ('read_id', 'contig', 'position', 'signal')
EVENT_OPTIONAL = ('context', 'dwell', 'strand')
AGGREGATED_COLUMNS = ('read_id', 'contig', 'position', 'context', 'value')
AGGREGATED_OPTIONAL = ('n_events', 'strand')
INPUT_TYPES = ('events', 'aggregated')


def _check_columns(df: pd.DataFrame, required, filepath: str = '<frame>'):
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"{filepath}: missing required columns {missing} (found {list(df.columns)})")


def read_table(filepath: str, input_type: str = 'events') -> pd.DataFrame:
    """
    Load an events or aggregated-positions TSV.

    Numeric columns are coerced; unparseable values become NaN.
    """
    if input_type not in INPUT_TYPES:
        raise ValueError(f"input_type must be one of {INPUT_TYPES}, got {input_type!r}")
    df = pd.read_csv(filepath, sep='\t', dtype={'read_id': str, 'contig': str,
                                                'context': str, 'strand': str})
    required = EVENT_COLUMNS if input_type == 'events' else AGGREGATED_COLUMNS
    _check_columns(df, required, filepath)

    numeric = ['position', 'signal', 'dwell'] if input_type == 'events' else ['position', 'value', 'n_events']
    for col in numeric:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors='coerce')
    return df


def _position(value):
    # Integral values become int; anything else is passed through for the
    # aggregator to reject.
    if isinstance(value, (float, np.floating)) and math.isfinite(value) and float(value).is_integer():
        return int(value)
    if isinstance(value, (int, np.integer)):
        return int(value)
    return value


def _number(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float('nan')


def _text(value, default=None):
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return default
    return str(value)


def events_from_frame(df: pd.DataFrame, input_type: str = 'events') -> Iterator[RawEvent]:
    """
    Yield RawEvents row by row, preserving row order.

    Aggregated rows become single events carrying their n_events, so feeding
    them back through the aggregator leaves them unchanged.
    """
    if input_type == 'events':
        _check_columns(df, EVENT_COLUMNS)
        value_col = 'signal'
    elif input_type == 'aggregated':
        _check_columns(df, AGGREGATED_COLUMNS)
        value_col = 'value'
    else:
        raise ValueError(f"input_type must be one of {INPUT_TYPES}, got {input_type!r}")

    has_context = 'context' in df.columns
    has_dwell = 'dwell' in df.columns and input_type == 'events'
    has_strand = 'strand' in df.columns
    has_count = 'n_events' in df.columns and input_type == 'aggregated'

    for row in df.itertuples(index=False):
        dwell = getattr(row, 'dwell') if has_dwell else None
        if dwell is not None and isinstance(dwell, float) and math.isnan(dwell):
            dwell = None
        event_count = 1
        if has_count:
            n = getattr(row, 'n_events')
            event_count = int(n) if isinstance(n, (int, float, np.number)) and math.isfinite(n) else 0
        yield RawEvent(
            read_id=_text(row.read_id, ''),
            contig=_text(row.contig, ''),
            reference_position=_position(row.position),
            signal_value=_number(getattr(row, value_col)),
            sequence_context=_text(getattr(row, 'context')) if has_context else None,
            dwell_time=dwell,
            strand=_text(getattr(row, 'strand'), '.') if has_strand else '.',
            event_count=event_count,
        )
