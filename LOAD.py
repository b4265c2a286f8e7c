"""
Load Limit (LOAD) Analysis Module

This module contains pure, non-UI functions to compare engine load against the
RPM-indexed load limit, flag samples that exceed or approach it, and note when
the injectors cut fuel at the same time.
"""

import numpy as np

from column_mapper import ColumnResolver
from utils import axis_index, empty_result, event_span, extract_signals, group_events, mean_of, time_range

DEFAULT_LOAD_LIMITS = [1.28, 1.35, 1.42, 1.50, 1.58, 1.67, 1.75, 1.83,
                       1.92, 2.00, 2.08, 2.17, 2.25, 2.33, 2.42, 2.54]
DEFAULT_LOAD_LIMIT_RPM = list(range(800, 7200, 400))

DEFAULT_PARAMS = {
    'grouping_window': 0.5,
    'warning_threshold': 0.9,
    'fuel_cut_pw': 0.1,
    'reference_rpm': 4000,
}

SIGNAL_KEYS = ['time', 'load', 'rpm', 'throttle', 'actual_boost']


# --- Helper Functions ---

def default_load_limit(rpm):
    """Load limit from the stock 16-point curve (step lookup on the RPM axis)."""
    idx = axis_index(rpm, DEFAULT_LOAD_LIMIT_RPM)
    if idx is None:
        return None
    return DEFAULT_LOAD_LIMITS[idx]


def _load_limit_at(rpm, tune):
    limit = tune.get_load_limit(rpm) if tune is not None else None
    if limit is None:
        limit = default_load_limit(rpm)
    return limit


def _scan_load_samples(signals, injector_pw, tune, params):
    totals = {'count': 0, 'load_sum': 0.0, 'limit_sum': 0.0, 'max_load': 0.0,
              'violations': 0, 'near_limit': 0}
    samples = []

    for idx, row in signals.iterrows():
        load, rpm = row['load'], row['rpm']
        if load <= 0 or rpm <= 0:
            continue

        limit = _load_limit_at(rpm, tune)
        if limit is None or not np.isfinite(limit) or limit <= 0:
            continue

        totals['count'] += 1
        totals['load_sum'] += load
        totals['limit_sum'] += limit
        totals['max_load'] = max(totals['max_load'], load)

        ratio = load / limit
        is_violation = load > limit
        is_near_limit = params['warning_threshold'] <= ratio < 1.0
        if is_violation:
            totals['violations'] += 1
        if is_violation or is_near_limit:
            totals['near_limit'] += 1

        if is_violation:
            event_type, severity = 'limit_violation', 'critical'
        elif is_near_limit:
            event_type, severity = 'near_limit', 'severe'
        else:
            continue

        pw = None if injector_pw is None else float(injector_pw.iloc[idx])
        samples.append({
            'index': int(idx),
            'time': float(row['time']),
            'load': float(load),
            'load_limit': float(limit),
            'load_ratio': float(ratio),
            'rpm': float(rpm),
            'throttle': float(row['throttle']),
            'boost': float(row['actual_boost']),
            'injector_pw': pw,
            'fuel_cut': pw is not None and pw <= params['fuel_cut_pw'],
            'event_type': event_type,
            'severity': severity,
        })
    return samples, totals


def _build_load_event(group):
    most_severe = max(group, key=lambda s: s['load_ratio'])
    event = event_span(group)
    event.update({
        'index': most_severe['index'],
        'load': most_severe['load'],
        'max_load': max(s['load'] for s in group),
        'load_limit': mean_of(group, 'load_limit'),
        'load_ratio': most_severe['load_ratio'],
        'max_load_ratio': max(s['load_ratio'] for s in group),
        'rpm': int(round(mean_of(group, 'rpm'))),
        'throttle': mean_of(group, 'throttle'),
        'boost': mean_of(group, 'boost'),
        'fuel_cut': any(s['fuel_cut'] for s in group),
        'event_type': most_severe['event_type'],
        'severity': most_severe['severity'],
    })
    return event


def _empty_statistics(times=None):
    return {
        'total_data_points': 0,
        'max_load': 0.0,
        'violations': 0,
        'violation_events': 0,
        'near_limit_events': 0,
        'time_near_limit': 0.0,
        'avg_load': 0.0,
        'avg_load_limit': 0.0,
        'fuel_cut_events': 0,
        'time_range': time_range(times if times is not None else []),
    }


def _calculate_statistics(events, totals, tune, params, log_times):
    count = totals['count']
    avg_limit = 0.0
    if count and totals['limit_sum'] > 0:
        avg_limit = totals['limit_sum'] / count
    elif tune is not None:
        reference = tune.get_load_limit(params['reference_rpm'])
        if reference is not None and np.isfinite(reference) and reference > 0:
            avg_limit = reference

    return {
        'total_data_points': count,
        'max_load': float(totals['max_load']),
        'violations': totals['violations'],
        'violation_events': sum(1 for e in events if e['event_type'] == 'limit_violation'),
        'near_limit_events': sum(1 for e in events if e['event_type'] == 'near_limit'),
        'time_near_limit': totals['near_limit'] / count * 100 if count else 0.0,
        'avg_load': totals['load_sum'] / count if count else 0.0,
        'avg_load_limit': float(avg_limit),
        'fuel_cut_events': sum(1 for e in events if e['fuel_cut']),
        'time_range': time_range(log_times),
    }


# --- Main Orchestrator Function ---

def run_load_limit_analysis(log, tune=None, resolver=None, params=None):
    """
    Main orchestrator for the load limit analysis. A pure computational function.

    Without a calibration (or without a load limit table in it) the stock
    default curve is used.
    """
    print(" -> Initializing load limit analysis...")
    params = {**DEFAULT_PARAMS, **(params or {})}
    if log is None or log.empty:
        return empty_result('No log data available.', _empty_statistics())

    resolver = resolver or ColumnResolver.for_log(log)
    columns = resolver.mappings(['load', 'rpm', 'injector_pw'])
    valid, missing = resolver.check_required(['load', 'rpm'])
    if not valid:
        return empty_result(f"Required load limit columns not found in log file: {', '.join(missing)}",
                            _empty_statistics(), columns)

    warnings = []
    if tune is None or tune.get_load_limit(params['reference_rpm']) is None:
        warnings.append("No load limit table in the tune. Using the default load limit curve.")

    signals = extract_signals(log, resolver, SIGNAL_KEYS)
    injector_pw = resolver.raw(log, 'injector_pw')
    if injector_pw is not None:
        injector_pw = injector_pw.fillna(0.0).reset_index(drop=True)

    samples, totals = _scan_load_samples(signals, injector_pw, tune, params)
    print(f" -> Raw load limit events detected (before grouping): {len(samples)}")

    events = group_events(samples, params['grouping_window'], _build_load_event, split_on_type_change=True)

    print(f" -> Load limit analysis complete. {len(events)} events.")
    return {
        'status': 'Success',
        'warnings': warnings,
        'events': events,
        'statistics': _calculate_statistics(events, totals, tune, params, signals['time']),
        'columns': columns,
    }
