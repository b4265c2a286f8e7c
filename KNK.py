"""
Knock (KNK) Detection Module

This module contains pure, non-UI functions to scan engine logs for knock
retard, group individual knock samples into events, classify their severity
and evaluate how quickly the ECU recovers the retarded timing.
"""

import numpy as np
import pandas as pd

from column_mapper import ColumnResolver
from utils import (classify_severity, empty_result, event_span, extract_signals,
                   group_events, mean_of, time_range)

DEFAULT_PARAMS = {
    'severity_thresholds': {'critical': -6.0, 'severe': -4.0, 'moderate': -2.0},
    'grouping_window': 0.1,
    'rpm_min': 1000,
    'retard_decay': 0.2,
    'retard_max': -8.0,
    'sensitivity_low_load': 0.81,
    'knock_threshold': -0.0001,
    'recovery_window': 2.0,
    'recovery_max_points': 100,
    'persistent_knock_threshold': 20,
    'low_load_offset': 0.5,
}

SIGNAL_KEYS = ['time', 'knock_retard', 'rpm', 'load', 'throttle', 'afr', 'actual_boost',
               'coolant_temp', 'intake_temp']


# --- Helper Functions ---

def _resolve_params(tune, params):
    """Merges defaults, tune knock parameters and caller overrides."""
    resolved = dict(DEFAULT_PARAMS)
    if tune is not None:
        tune_params = tune.get_knock_parameters()
        for key in ('rpm_min', 'retard_decay', 'retard_max', 'sensitivity_low_load'):
            if tune_params.get(key):
                resolved[key] = tune_params[key]
    if params:
        resolved.update(params)
    return resolved


def categorize_severity(knock_retard, load, params=None):
    """
    Severity of a single knock sample. Below the low-load sensitivity threshold
    every tier boundary is raised by 0.5 degrees.
    """
    params = params or DEFAULT_PARAMS
    offset = params['low_load_offset'] if load < params['sensitivity_low_load'] else 0.0
    thresholds = {name: value + offset for name, value in params['severity_thresholds'].items()}
    return classify_severity(knock_retard, thresholds)


def _collect_knock_samples(signals, iam, tune, params):
    """Builds the per-sample candidate list from the knock retard signal."""
    mask = (signals['knock_retard'] < params['knock_threshold']) & (signals['rpm'] >= params['rpm_min'])
    candidates = signals[mask]
    if candidates.empty:
        return []

    if tune is not None:
        pe_mode = tune.pe_mode_mask(candidates['rpm'], candidates['load'], candidates['throttle'])
    else:
        pe_mode = pd.Series(False, index=candidates.index)

    samples = []
    for idx, row in candidates.iterrows():
        samples.append({
            'index': int(idx),
            'time': float(row['time']),
            'knock_retard': float(row['knock_retard']),
            'rpm': float(row['rpm']),
            'throttle': float(row['throttle']),
            'load': float(row['load']),
            'afr': float(row['afr']),
            'boost': float(row['actual_boost']),
            'coolant_temp': float(row['coolant_temp']),
            'intake_temp': float(row['intake_temp']),
            'severity': categorize_severity(row['knock_retard'], row['load'], params),
            'is_pe_mode': bool(pe_mode.loc[idx]),
            'iam': None if iam is None or pd.isna(iam.iloc[idx]) else float(iam.iloc[idx]),
        })
    return samples


def _build_knock_event(group, params):
    """Collapses a group of knock samples into one event."""
    most_severe = min(group, key=lambda s: s['knock_retard'])
    avg_load = mean_of(group, 'load')
    iam = next((s['iam'] for s in group if s['iam'] is not None), None)

    event = event_span(group)
    event.update({
        'index': most_severe['index'],
        'last_index': group[-1]['index'],
        'knock_retard': most_severe['knock_retard'],
        'max_knock_retard': min(s['knock_retard'] for s in group),
        'avg_knock_retard': mean_of(group, 'knock_retard'),
        'rpm': int(round(mean_of(group, 'rpm'))),
        'throttle': mean_of(group, 'throttle'),
        'load': avg_load,
        'afr': mean_of(group, 'afr'),
        'boost': mean_of(group, 'boost'),
        'coolant_temp': mean_of(group, 'coolant_temp'),
        'intake_temp': mean_of(group, 'intake_temp'),
        'severity': most_severe['severity'],
        'event_type': 'knock',
        'is_pe_mode': any(s['is_pe_mode'] for s in group),
        'is_low_load': avg_load < params['sensitivity_low_load'],
        'iam': iam,
        'recovery_rate': None,
        'recovery_time': None,
        'slow_recovery': False,
        'persistent_knock': False,
    })
    return event


def _analyze_recovery(events, signals, params):
    """
    Scans forward from the end of each event while knock retard stays negative
    and measures how quickly the timing is being restored.
    """
    times = signals['time'].to_numpy()
    retard = signals['knock_retard'].to_numpy()
    expected_rate = params['retard_decay'] * 10

    for event in events:
        end_time = event['end_time'] + params['recovery_window']
        start = event['last_index'] + 1
        stop = min(len(times), start + params['recovery_max_points'])

        points = []
        for i in range(start, stop):
            if times[i] > end_time:
                break
            if retard[i] < params['knock_threshold']:
                points.append((times[i], retard[i]))
            else:
                break

        if len(points) > 1:
            time_diff = points[-1][0] - points[0][0]
            retard_diff = points[-1][1] - points[0][1]
            rate = retard_diff / time_diff if time_diff > 0 else 0.0
            ratio = abs(rate) / expected_rate if expected_rate > 0 else 0.0
            event['recovery_rate'] = float(rate)
            event['recovery_time'] = float(time_diff)
            event['slow_recovery'] = ratio < 0.5
            event['persistent_knock'] = len(points) > params['persistent_knock_threshold']
        else:
            event['recovery_rate'] = 0.0 if not points else None
            event['recovery_time'] = 0.0 if not points else None
            event['slow_recovery'] = False
            event['persistent_knock'] = False
    return events


def _empty_statistics():
    return {
        'total_events': 0,
        'max_knock_retard': 0.0,
        'max_knock_retard_abs': 0.0,
        'time_with_knock': 0.0,
        'critical_events': 0,
        'severe_events': 0,
        'moderate_events': 0,
        'mild_events': 0,
        'avg_knock_retard': 0.0,
        'slow_recovery_events': 0,
        'persistent_knock_events': 0,
        'pemode_events': 0,
        'rpm_range': {'min': 0, 'max': 0},
        'time_range': {'min': 0.0, 'max': 0.0},
    }


def _calculate_statistics(events, log_times):
    if not events:
        return _empty_statistics()

    retards = [e['knock_retard'] for e in events]
    rpms = [e['rpm'] for e in events]
    times = [e['time'] for e in events]

    log_span = time_range(log_times)
    total_time = log_span['max'] - log_span['min']
    knock_span = max(times) - min(times)

    return {
        'total_events': len(events),
        'max_knock_retard': float(min(retards)),
        'max_knock_retard_abs': float(abs(min(retards))),
        'time_with_knock': (knock_span / total_time) * 100 if total_time > 0 else 0.0,
        'critical_events': sum(1 for e in events if e['severity'] == 'critical'),
        'severe_events': sum(1 for e in events if e['severity'] == 'severe'),
        'moderate_events': sum(1 for e in events if e['severity'] == 'moderate'),
        'mild_events': sum(1 for e in events if e['severity'] == 'mild'),
        'avg_knock_retard': float(np.mean(retards)),
        'slow_recovery_events': sum(1 for e in events if e['slow_recovery']),
        'persistent_knock_events': sum(1 for e in events if e['persistent_knock']),
        'pemode_events': sum(1 for e in events if e['is_pe_mode']),
        'rpm_range': {'min': min(rpms), 'max': max(rpms)},
        'time_range': {'min': float(min(times)), 'max': float(max(times))},
    }


def filter_knock_events(events, search_term='', severity='all'):
    """Filters knock events by severity and a free-text search over the key fields."""
    filtered = list(events)
    if severity and severity != 'all':
        filtered = [e for e in filtered if e['severity'] == severity]

    term = (search_term or '').strip().lower()
    if term:
        def _matches(e):
            fields = (e['time'], e['knock_retard'], e['rpm'], e['throttle'], e['severity'])
            return any(term in str(f).lower() for f in fields)
        filtered = [e for e in filtered if _matches(e)]
    return filtered


# --- Main Orchestrator Function ---

def run_knock_analysis(log, tune=None, resolver=None, params=None):
    """
    Main orchestrator for knock detection. A pure computational function.

    Args:
        log (pd.DataFrame): The raw log data.
        tune (TuningData, optional): Calibration used for knock parameters and PE mode.
        resolver (ColumnResolver, optional): Shared column resolver for this log.
        params (dict, optional): Overrides for DEFAULT_PARAMS.

    Returns:
        dict: 'status', 'warnings', 'events', 'statistics' and 'columns'.
    """
    print(" -> Initializing knock analysis...")
    if log is None or log.empty:
        return empty_result('No log data available.', _empty_statistics())

    resolver = resolver or ColumnResolver.for_log(log)
    params = _resolve_params(tune, params)
    columns = resolver.mappings(SIGNAL_KEYS)
    warnings = []

    if not resolver.has('time'):
        return empty_result('Time column not found in log data.', _empty_statistics(), columns)

    if not resolver.has('knock_retard'):
        warnings.append("Knock retard column not found. No knock events can be detected.")
        print(" -> Knock analysis complete.")
        return {
            'status': 'Success',
            'warnings': warnings,
            'events': [],
            'statistics': _empty_statistics(),
            'columns': columns,
        }

    print(" -> Preparing knock signals from logs...")
    signals = extract_signals(log, resolver, SIGNAL_KEYS)
    iam = resolver.raw(log, 'iam')
    if iam is not None:
        iam = iam.reset_index(drop=True)

    samples = _collect_knock_samples(signals, iam, tune, params)
    print(f" -> Raw knock samples detected (before grouping): {len(samples)}")

    events = group_events(samples, params['grouping_window'], lambda g: _build_knock_event(g, params))

    print(" -> Analyzing knock recovery...")
    events = _analyze_recovery(events, signals, params)

    print(f" -> Knock analysis complete. {len(events)} events.")
    return {
        'status': 'Success',
        'warnings': warnings,
        'events': events,
        'statistics': _calculate_statistics(events, signals['time']),
        'columns': columns,
    }
