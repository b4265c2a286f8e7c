"""
Wastegate (WG) Boost Control Analysis Module

This module contains pure, non-UI functions to compare actual manifold pressure
against the boost target, classify overshoot/undershoot and boost-limit
violations, and flag samples where the wastegate itself is saturated.
"""

import pandas as pd

from column_mapper import ColumnResolver
from tuning_loader import DEFAULT_BOOST_ERROR_INDEX
from utils import empty_result, event_span, extract_signals, filter_by_duration, group_events, mean_of, time_range

DEFAULT_PARAMS = {
    'min_boost': 100.0,
    'overshoot_threshold': 5.0,
    'undershoot_threshold': -5.0,
    'target_tolerance': 10.0,
    'grouping_window': 0.5,
    'min_overshoot_duration': 0.25,
    'min_undershoot_duration': 0.5,
    'overshoot_min_throttle': 30.0,
    'undershoot_min_throttle': 50.0,
    'wg_saturation_ratio': 0.95,
    'wg_closed_duty': 5.0,
}

SIGNAL_KEYS = ['time', 'actual_boost', 'boost_target', 'wastegate', 'rpm', 'throttle', 'load']


# --- Helper Functions ---

def classify_error_severity(error, thresholds=None):
    """Severity of a boost error (kPa) from the 4-tier ladder; 'normal' below the last tier."""
    thresholds = thresholds or DEFAULT_BOOST_ERROR_INDEX
    abs_error = abs(error)
    if abs_error > thresholds[0]:
        return 'critical'
    if abs_error > thresholds[1]:
        return 'severe'
    if abs_error > thresholds[2]:
        return 'moderate'
    if abs_error > thresholds[3]:
        return 'mild'
    return 'normal'


def _wastegate_tables(tune):
    if tune is None:
        return None
    wg_max = tune.get_table('wg_max')
    wg_rpm = tune.get_array('wg_rpm_index')
    wg_tps = tune.get_array('wg_tps_index')
    if wg_max is None or wg_rpm is None or wg_tps is None:
        return None
    if wg_max.shape != (len(wg_rpm), len(wg_tps)):
        return None
    return wg_max, wg_rpm, wg_tps


def _classify_boost_samples(boost_data, tune, params, thresholds, has_wastegate, has_target=True):
    """
    Classifies each boosted sample and returns the candidate list for grouping.
    Without a target column the error is 0, so only limit violations qualify.
    """
    wg_tables = _wastegate_tables(tune) if has_wastegate else None
    samples = []

    for idx, row in boost_data.iterrows():
        error = row['actual_boost'] - row['boost_target'] if has_target else 0.0
        error_pct = (error / row['boost_target']) * 100 if has_target and row['boost_target'] > 0 else 0.0
        throttle = row['throttle']
        rpm = row['rpm']

        boost_limit = tune.get_boost_limit(rpm) if tune is not None else None
        limit_violation = boost_limit is not None and row['actual_boost'] > boost_limit

        event_type = 'normal'
        if error > params['overshoot_threshold']:
            event_type = 'overshoot'
        elif error < params['undershoot_threshold']:
            event_type = 'undershoot'
        severity = classify_error_severity(error, thresholds)

        wastegate_dc = float(row['wastegate']) if has_wastegate else None
        saturated = False
        if wg_tables is not None:
            wg_max = tune.interpolate_2d(*wg_tables, rpm, throttle)
            if event_type == 'overshoot' and wastegate_dc >= wg_max * params['wg_saturation_ratio']:
                saturated = True
            if event_type == 'undershoot' and wastegate_dc <= params['wg_closed_duty']:
                saturated = True

        if not (limit_violation or event_type != 'normal' or abs(error) > params['target_tolerance']):
            continue
        if event_type == 'overshoot' and throttle < params['overshoot_min_throttle'] and not limit_violation:
            continue
        if event_type == 'undershoot' and throttle <= params['undershoot_min_throttle'] and not limit_violation:
            continue

        samples.append({
            'index': int(idx),
            'time': float(row['time']),
            'boost_target': float(row['boost_target']),
            'actual_boost': float(row['actual_boost']),
            'boost_error': float(error),
            'boost_error_percent': float(error_pct),
            'wastegate_dc': wastegate_dc,
            'rpm': float(rpm),
            'throttle': float(throttle),
            'load': float(row['load']),
            'event_type': 'limit_violation' if limit_violation else event_type,
            'severity': 'critical' if limit_violation else severity,
            'boost_limit': boost_limit,
            'boost_limit_violation': bool(limit_violation),
            'wastegate_saturated': saturated,
        })
    return samples


def _build_boost_event(group):
    """Collapses a same-type group of boost samples into one event."""
    most_severe = max(group, key=lambda s: abs(s['boost_error']))
    rpm = mean_of(group, 'rpm')

    event = event_span(group)
    event.update({
        'index': most_severe['index'],
        'boost_target': mean_of(group, 'boost_target'),
        'actual_boost': mean_of(group, 'actual_boost'),
        'boost_error': most_severe['boost_error'],
        'boost_error_percent': most_severe['boost_error_percent'],
        'max_boost_error': most_severe['boost_error'],
        'avg_boost_error': mean_of(group, 'boost_error'),
        'avg_boost_error_percent': mean_of(group, 'boost_error_percent'),
        'wastegate_dc': mean_of(group, 'wastegate_dc'),
        'rpm': int(round(rpm)) if rpm is not None else 0,
        'throttle': mean_of(group, 'throttle'),
        'load': mean_of(group, 'load'),
        'event_type': most_severe['event_type'],
        'severity': most_severe['severity'],
        'boost_limit': most_severe['boost_limit'],
        'boost_limit_violation': any(s['boost_limit_violation'] for s in group),
        'wastegate_saturated': any(s['wastegate_saturated'] for s in group),
    })
    return event


def _group_boost_events(samples, params):
    """Groups each event type separately and applies the per-type minimum durations."""
    grouped = group_events(samples, params['grouping_window'], _build_boost_event, by='event_type')

    overshoot = filter_by_duration([e for e in grouped if e['event_type'] == 'overshoot'],
                                   params['min_overshoot_duration'])
    undershoot = filter_by_duration([e for e in grouped if e['event_type'] == 'undershoot'],
                                    params['min_undershoot_duration'])
    violations = [e for e in grouped if e['event_type'] == 'limit_violation']

    return sorted(overshoot + undershoot + violations, key=lambda e: e['time'])


def _empty_statistics(times=None):
    return {
        'total_data_points': 0,
        'avg_boost_error': 0.0,
        'avg_boost_error_abs': 0.0,
        'max_overshoot': 0.0,
        'max_undershoot': 0.0,
        'in_target_percent': 0.0,
        'overshoot_events': 0,
        'undershoot_events': 0,
        'limit_violations': 0,
        'critical_events': 0,
        'severe_events': 0,
        'moderate_events': 0,
        'mild_events': 0,
        'wastegate_saturated_events': 0,
        'avg_wastegate_dc': 0.0,
        'time_range': time_range(times if times is not None else []),
    }


def _calculate_statistics(boost_data, events, params, has_wastegate, has_target, log_times):
    if has_target:
        errors = boost_data['actual_boost'] - boost_data['boost_target']
    else:
        errors = pd.Series(0.0, index=boost_data.index)
    count = len(boost_data)

    return {
        'total_data_points': count,
        'avg_boost_error': float(errors.mean()),
        'avg_boost_error_abs': float(errors.abs().mean()),
        'max_overshoot': float(max(errors.max(), 0.0)),
        'max_undershoot': float(min(errors.min(), 0.0)),
        'in_target_percent': float((errors.abs() <= params['target_tolerance']).sum() / count * 100),
        'overshoot_events': sum(1 for e in events if e['event_type'] == 'overshoot'),
        'undershoot_events': sum(1 for e in events if e['event_type'] == 'undershoot'),
        'limit_violations': sum(1 for e in events if e['event_type'] == 'limit_violation'),
        'critical_events': sum(1 for e in events if e['severity'] == 'critical'),
        'severe_events': sum(1 for e in events if e['severity'] == 'severe'),
        'moderate_events': sum(1 for e in events if e['severity'] == 'moderate'),
        'mild_events': sum(1 for e in events if e['severity'] == 'mild'),
        'wastegate_saturated_events': sum(1 for e in events if e['wastegate_saturated']),
        'avg_wastegate_dc': float(boost_data['wastegate'].mean()) if has_wastegate else 0.0,
        'time_range': time_range(log_times),
    }


# --- Main Orchestrator Function ---

def run_boost_analysis(log, tune=None, resolver=None, params=None):
    """
    Main orchestrator for the boost control analysis. A pure computational function.

    Args:
        log (pd.DataFrame): The raw log data.
        tune (TuningData, optional): Calibration for boost limits, the error ladder and WG max.
        resolver (ColumnResolver, optional): Shared column resolver for this log.
        params (dict, optional): Overrides for DEFAULT_PARAMS.

    Returns:
        dict: 'status', 'warnings', 'events', 'statistics', 'columns' and, on
              failure, 'error'.
    """
    print(" -> Initializing boost control analysis...")
    params = {**DEFAULT_PARAMS, **(params or {})}
    if log is None or log.empty:
        return empty_result('No log data available.', _empty_statistics())

    resolver = resolver or ColumnResolver.for_log(log)
    columns = resolver.mappings(['boost_target', 'actual_boost', 'wastegate'])
    warnings = []

    if not resolver.has('actual_boost'):
        return empty_result(
            'Required boost column (actual boost/manifold pressure) not found in log file.',
            _empty_statistics(), columns)
    has_target = resolver.has('boost_target')
    if not has_target:
        warnings.append("Boost target column not found. Boost error is reported as 0 and only "
                        "limit violations are detected.")

    has_wastegate = resolver.has('wastegate')
    thresholds = tune.get_boost_error_index() if tune is not None else list(DEFAULT_BOOST_ERROR_INDEX)

    print(" -> Filtering boost data (>= 100 kPa)...")
    signals = extract_signals(log, resolver, SIGNAL_KEYS)
    boost_data = signals[signals['actual_boost'] >= params['min_boost']]
    if boost_data.empty:
        return empty_result('No boost data found (all values below 100 kPa)',
                            _empty_statistics(signals['time']), columns, warnings)

    samples = _classify_boost_samples(boost_data, tune, params, thresholds, has_wastegate, has_target)
    print(f" -> Raw boost events detected (before grouping): {len(samples)}")
    events = _group_boost_events(samples, params)

    print(f" -> Boost control analysis complete. {len(events)} events.")
    return {
        'status': 'Success',
        'warnings': warnings,
        'events': events,
        'statistics': _calculate_statistics(boost_data, events, params, has_wastegate, has_target,
                                            signals['time']),
        'columns': columns,
    }
