# utils.py

import numpy as np
import pandas as pd

# Tolerance for comparing floating-point timestamps against grouping windows.
TIME_EPSILON = 1e-9


# --- Axis Helpers ---

def axis_index(value, axis):
    """
    Index of the last breakpoint <= value, clamped to the axis ends.
    Returns None for NaN values or an empty axis.
    """
    axis = np.asarray(axis, dtype=float).ravel()
    if axis.size == 0 or value is None or pd.isna(value):
        return None
    if value < axis[0]:
        return 0
    if value > axis[-1]:
        return axis.size - 1
    idx = int(np.searchsorted(axis, value, side='right') - 1)
    return max(0, min(idx, axis.size - 1))


def axis_indices(values, axis):
    """Vectorized axis_index. NaN values map to -1."""
    axis = np.asarray(axis, dtype=float).ravel()
    values = np.asarray(values, dtype=float)
    if axis.size == 0:
        return np.full(values.shape, -1, dtype=int)
    idx = np.searchsorted(axis, values, side='right') - 1
    idx = np.clip(idx, 0, axis.size - 1).astype(int)
    idx[np.isnan(values)] = -1
    return idx


def axis_weight(value, idx, axis):
    """
    Triangular cell-centering weight: 1.0 at the center of the bin, falling
    linearly to 0.0 at its edges. Edge bins use the adjacent breakpoint span.
    """
    axis = np.asarray(axis, dtype=float).ravel()
    if axis.size < 2 or idx is None:
        return 1.0

    if idx >= axis.size - 1:
        lower, upper = axis[-2], axis[-1]
    else:
        lower, upper = axis[idx], axis[idx + 1]

    half_width = (upper - lower) / 2
    if half_width <= 0:
        return 1.0
    center = (lower + upper) / 2
    return max(0.0, 1.0 - abs(value - center) / half_width)


# --- Event Grouping ---

def _split_into_groups(samples, window, type_key=None):
    samples = sorted(samples, key=lambda s: s['time'])
    times = np.array([s['time'] for s in samples], dtype=float)

    breaks = np.diff(times) > window + TIME_EPSILON
    if type_key is not None:
        types = [s.get(type_key) for s in samples]
        breaks |= np.array([a != b for a, b in zip(types[:-1], types[1:])], dtype=bool)

    group_ids = np.concatenate([[0], np.cumsum(breaks)])
    groups = []
    for gid in np.unique(group_ids):
        groups.append([samples[i] for i in np.flatnonzero(group_ids == gid)])
    return groups


def group_events(candidates, window, build_event, by=None, split_on_type_change=False):
    """
    Clusters per-sample detections into events.

    A sample joins the current group when its time is within `window` seconds
    of the group's last member. With `by` set (e.g. 'event_type') each value of
    that key is grouped independently. With `split_on_type_change` the group is
    also broken whenever consecutive samples change 'event_type'.

    `build_event` receives the list of samples of one group and returns the
    event dict (or None to drop it). Events are returned sorted by start time.
    """
    if not candidates:
        return []

    groups = []
    if by is not None:
        buckets = {}
        for sample in candidates:
            buckets.setdefault(sample.get(by), []).append(sample)
        for bucket in buckets.values():
            groups.extend(_split_into_groups(bucket, window))
    else:
        type_key = 'event_type' if split_on_type_change else None
        groups = _split_into_groups(candidates, window, type_key)

    events = [build_event(group) for group in groups]
    events = [event for event in events if event is not None]
    return sorted(events, key=lambda e: e['time'])


def event_span(group):
    """Start, end, duration and sample count of a group of samples."""
    start = group[0]['time']
    end = group[-1]['time']
    return {
        'time': start,
        'end_time': end,
        'duration': end - start,
        'event_count': len(group),
    }


def filter_by_duration(events, min_duration):
    """Drops grouped events shorter than `min_duration` seconds."""
    return [e for e in events if (e.get('duration') or 0) >= min_duration - TIME_EPSILON]


def classify_severity(value, thresholds, use_absolute=False):
    """
    Generic ladder for values where more negative means worse (e.g. knock retard).
    `thresholds` holds 'critical', 'severe' and 'moderate' cut-offs.
    """
    v = abs(value) if use_absolute else value
    if thresholds.get('critical') is not None and v < thresholds['critical']:
        return 'critical'
    if thresholds.get('severe') is not None and v < thresholds['severe']:
        return 'severe'
    if thresholds.get('moderate') is not None and v < thresholds['moderate']:
        return 'moderate'
    return 'mild'


def mean_of(group, key, skip_none=True):
    """Arithmetic mean of `key` across a group, ignoring missing values."""
    values = [s.get(key) for s in group]
    if skip_none:
        values = [v for v in values if v is not None and not pd.isna(v)]
    if not values:
        return None
    return float(np.mean(values))


def time_range(times):
    """{'min', 'max'} of a time series, or zeros when empty."""
    times = pd.Series(times, dtype=float).dropna()
    if times.empty:
        return {'min': 0.0, 'max': 0.0}
    return {'min': float(times.min()), 'max': float(times.max())}


def extract_signals(log, resolver, keys, default=0.0):
    """
    Builds a positional DataFrame of numeric signals keyed by logical name.
    Missing columns and unparseable values become `default`.
    """
    frame = pd.DataFrame({key: resolver.numeric(log, key, default) for key in keys}, index=log.index)
    return frame.reset_index(drop=True)


def empty_result(error, statistics, columns=None, warnings=None):
    """Failure result that still carries zeroed statistics and no events."""
    return {
        'status': 'Failure',
        'warnings': warnings or [],
        'error': error,
        'events': [],
        'statistics': statistics,
        'columns': columns or {},
    }
