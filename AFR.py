"""
Air/Fuel Ratio (AFR) Analysis Module

This module contains pure, non-UI functions to compare measured lambda against
the commanded lambda target. Open-loop (PE) samples use tighter thresholds and
are additionally checked against the calibration's own PE target table.
"""

from column_mapper import ColumnResolver
from utils import empty_result, event_span, extract_signals, group_events, mean_of, time_range

DEFAULT_PARAMS = {
    'lean_threshold': 0.05,
    'rich_threshold': -0.05,
    'target_tolerance': 0.02,
    'pe_lean_threshold': 0.03,
    'pe_rich_threshold': -0.03,
    'pe_target_tolerance': 0.015,
    'grouping_window': 1.0,
    'stoich_tolerance': 0.001,
    'pe_target_mismatch': 0.01,
    'min_event_throttle': 10.0,
    'in_target_min_throttle': 15.0,
    'min_deviation_percent': 7.0,
}

SIGNAL_KEYS = ['time', 'afr', 'afr_target', 'rpm', 'load', 'throttle']


# --- Helper Functions ---

def _thresholds(is_pe_mode, params):
    if is_pe_mode:
        return params['pe_lean_threshold'], params['pe_rich_threshold'], params['pe_target_tolerance']
    return params['lean_threshold'], params['rich_threshold'], params['target_tolerance']


def _scan_afr_samples(signals, tune, params):
    """
    Walks the valid samples once, accumulating error statistics and collecting
    the samples that qualify as AFR events.
    """
    target = signals['afr_target']
    measured = signals['afr']
    valid = (target > 0) & (measured > 0) & ((target - 1.0).abs() >= params['stoich_tolerance'])
    data = signals[valid]

    totals = {
        'count': 0, 'in_target_count': 0, 'in_target_denominator': 0,
        'error_sum': 0.0, 'error_abs_sum': 0.0, 'max_lean': 0.0, 'max_rich': 0.0,
    }
    samples = []

    for idx, row in data.iterrows():
        totals['count'] += 1
        rpm, load, throttle = row['rpm'], row['load'], row['throttle']

        is_pe_mode = False
        expected_pe_target = None
        target_mismatch = False
        if tune is not None:
            is_pe_mode = tune.is_pe_mode_active(rpm, load, throttle)
            if is_pe_mode:
                expected_pe_target = tune.get_pe_target(rpm, load, 'initial')
                if expected_pe_target and abs(row['afr_target'] - expected_pe_target) > params['pe_target_mismatch']:
                    target_mismatch = True

        error = row['afr'] - row['afr_target']
        error_pct = (error / row['afr_target']) * 100 if row['afr_target'] > 0 else 0.0
        lean, rich, tolerance = _thresholds(is_pe_mode, params)

        event_type = 'normal'
        if error > lean:
            event_type = 'lean'
        elif error < rich:
            event_type = 'rich'

        totals['error_sum'] += error
        totals['error_abs_sum'] += abs(error)
        totals['max_lean'] = max(totals['max_lean'], error)
        totals['max_rich'] = min(totals['max_rich'], error)

        # Idle and near-closed throttle only feed the error statistics.
        if throttle < params['min_event_throttle'] and not target_mismatch:
            continue

        if throttle >= params['in_target_min_throttle']:
            totals['in_target_denominator'] += 1
            if abs(error) <= tolerance:
                totals['in_target_count'] += 1

        significant = event_type != 'normal' or abs(error) > tolerance
        if not (target_mismatch or (significant and abs(error_pct) > params['min_deviation_percent'])):
            continue

        samples.append({
            'index': int(idx),
            'time': float(row['time']),
            'target_afr': float(row['afr_target']),
            'measured_afr': float(row['afr']),
            'afr_error': float(error),
            'afr_error_percent': float(error_pct),
            'rpm': float(rpm),
            'throttle': float(throttle),
            'load': float(load),
            'event_type': 'target_mismatch' if target_mismatch else event_type,
            'is_pe_mode': bool(is_pe_mode),
            'expected_pe_target': expected_pe_target,
            'target_mismatch': target_mismatch,
        })
    return samples, totals


def _build_afr_event(group):
    """
    Collapses a same-type group into one event. Target and measured values come
    from the first sample so they line up with a chart cursor at the event start.
    """
    most_severe = max(group, key=lambda s: abs(s['afr_error']))
    first = group[0]
    sign = -1 if most_severe['afr_error'] < 0 else 1

    event = event_span(group)
    event.update({
        'index': most_severe['index'],
        'target_afr': first['target_afr'],
        'measured_afr': first['measured_afr'],
        'afr_error': most_severe['afr_error'],
        'max_afr_error': max(abs(s['afr_error']) for s in group) * sign,
        'avg_afr_error': mean_of(group, 'afr_error'),
        'afr_error_percent': most_severe['afr_error_percent'],
        'avg_afr_error_percent': mean_of(group, 'afr_error_percent'),
        'rpm': int(round(mean_of(group, 'rpm'))),
        'throttle': mean_of(group, 'throttle'),
        'load': mean_of(group, 'load'),
        'event_type': most_severe['event_type'],
        'is_pe_mode': any(s['is_pe_mode'] for s in group),
        'expected_pe_target': most_severe['expected_pe_target'],
        'target_mismatch': any(s['target_mismatch'] for s in group),
    })
    return event


def _empty_statistics(times=None):
    return {
        'total_data_points': 0,
        'avg_error': 0.0,
        'avg_error_abs': 0.0,
        'max_lean': 0.0,
        'max_rich': 0.0,
        'in_target_percent': 0.0,
        'lean_events': 0,
        'rich_events': 0,
        'pe_mode_events': 0,
        'target_mismatch_events': 0,
        'time_range': time_range(times if times is not None else []),
    }


def _calculate_statistics(events, totals, log_times):
    count = totals['count']
    denominator = totals['in_target_denominator']
    return {
        'total_data_points': count,
        'avg_error': totals['error_sum'] / count if count else 0.0,
        'avg_error_abs': totals['error_abs_sum'] / count if count else 0.0,
        'max_lean': float(totals['max_lean']),
        'max_rich': float(totals['max_rich']),
        'in_target_percent': totals['in_target_count'] / denominator * 100 if denominator else 0.0,
        'lean_events': sum(1 for e in events if e['event_type'] == 'lean'),
        'rich_events': sum(1 for e in events if e['event_type'] == 'rich'),
        'pe_mode_events': sum(1 for e in events if e['is_pe_mode']),
        'target_mismatch_events': sum(1 for e in events if e['target_mismatch']),
        'time_range': time_range(log_times),
    }


# --- Main Orchestrator Function ---

def run_afr_analysis(log, tune=None, resolver=None, params=None):
    """
    Main orchestrator for the AFR analysis. A pure computational function.

    Args:
        log (pd.DataFrame): The raw log data.
        tune (TuningData, optional): Calibration for PE mode detection and PE targets.
        resolver (ColumnResolver, optional): Shared column resolver for this log.
        params (dict, optional): Overrides for DEFAULT_PARAMS.

    Returns:
        dict: 'status', 'warnings', 'events', 'statistics', 'columns' and, on
              failure, 'error'.
    """
    print(" -> Initializing AFR analysis...")
    params = {**DEFAULT_PARAMS, **(params or {})}
    if log is None or log.empty:
        return empty_result('No log data available.', _empty_statistics())

    resolver = resolver or ColumnResolver.for_log(log)
    columns = resolver.mappings(['afr_target', 'afr'])
    valid, missing = resolver.check_required(['afr_target', 'afr'])
    if not valid:
        return empty_result(f"Required AFR columns not found in log file: {', '.join(missing)}",
                            _empty_statistics(), columns)

    signals = extract_signals(log, resolver, SIGNAL_KEYS)
    samples, totals = _scan_afr_samples(signals, tune, params)
    print(f" -> Raw AFR events detected (before grouping): {len(samples)}")

    events = group_events(samples, params['grouping_window'], _build_afr_event, by='event_type')

    print(f" -> AFR analysis complete. {len(events)} events.")
    return {
        'status': 'Success',
        'warnings': [],
        'events': events,
        'statistics': _calculate_statistics(events, totals, signals['time']),
        'columns': columns,
    }
