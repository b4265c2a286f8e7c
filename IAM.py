"""
Ignition Advance Multiplier (IAM) Analysis Module

This module contains pure, non-UI functions to track the IAM over a log: low
IAM samples, sudden drops and recoveries, intervals where the IAM stays stuck
low, and how often drops coincide with detected knock.
"""

from column_mapper import ColumnResolver
from utils import empty_result, event_span, extract_signals, group_events, mean_of, time_range

DEFAULT_PARAMS = {
    'low_threshold': 0.30,
    'critical_threshold': 0.20,
    'grouping_window': 1.0,
    'iam_init': 0.50,
    'drop_threshold': 0.05,
    'event_drop_threshold': 0.1,
    'recovery_threshold': 0.01,
    'stuck_low_duration': 5.0,
    'knock_correlation_window': 1.0,
}

SIGNAL_KEYS = ['time', 'rpm', 'throttle', 'load', 'knock_retard']


# --- Helper Functions ---

def _stuck_low_event(start, end, min_iam, group_rows, params):
    return {
        'index': group_rows[0],
        'time': start['time'],
        'end_time': end['time'],
        'duration': end['time'] - start['time'],
        'iam': min_iam,
        'min_iam': min_iam,
        'rpm': int(round(end['rpm'])),
        'throttle': end['throttle'],
        'load': end['load'],
        'event_type': 'stuck_low',
        'severity': 'critical' if min_iam < params['critical_threshold'] else 'severe',
        'event_count': len(group_rows),
    }


def _scan_iam_samples(signals, iam_values, params):
    """
    Walks the IAM trace once. Returns the per-sample candidates, the already
    complete stuck-low intervals, the drop and recovery records, and totals.
    """
    samples, stuck_events, drops, recoveries = [], [], [], []
    totals = {'count': 0, 'sum': 0.0, 'min': 1.0, 'max': 0.0, 'current': params['iam_init']}
    previous = params['iam_init']
    stuck = None
    last_sample = None

    for idx, row in signals.iterrows():
        iam = iam_values.iloc[idx]
        if iam > 1.0:
            iam = iam / 100.0
        if not iam > 0:
            continue

        sample = {
            'index': int(idx),
            'time': float(row['time']),
            'iam': float(iam),
            'previous_iam': float(previous),
            'rpm': float(row['rpm']),
            'throttle': float(row['throttle']),
            'load': float(row['load']),
            'knock_retard': float(row['knock_retard']),
        }

        totals['count'] += 1
        totals['current'] = iam
        totals['sum'] += iam
        totals['min'] = min(totals['min'], iam)
        totals['max'] = max(totals['max'], iam)

        drop = previous - iam
        sample['drop_amount'] = float(drop)
        if drop > params['drop_threshold']:
            drops.append(sample)

        recovery = iam - previous
        if recovery > params['recovery_threshold'] and previous < 1.0:
            recoveries.append({'time': sample['time'], 'recovery_amount': float(recovery)})

        if iam < params['low_threshold']:
            if stuck is None:
                stuck = {'start': sample, 'min_iam': iam, 'rows': []}
            stuck['min_iam'] = min(stuck['min_iam'], iam)
            stuck['rows'].append(int(idx))
        elif stuck is not None:
            if sample['time'] - stuck['start']['time'] >= params['stuck_low_duration']:
                stuck_events.append(_stuck_low_event(stuck['start'], sample, stuck['min_iam'],
                                                     stuck['rows'], params))
            stuck = None

        if iam < params['critical_threshold']:
            sample.update({'event_type': 'low_iam', 'severity': 'critical'})
        elif iam < params['low_threshold']:
            sample.update({'event_type': 'low_iam', 'severity': 'severe'})
        else:
            sample.update({'event_type': 'normal', 'severity': 'normal'})

        if sample['event_type'] != 'normal' or drop > params['event_drop_threshold']:
            samples.append(sample)

        previous = iam
        last_sample = sample

    # An interval still open when the log ends is closed at the last sample.
    if stuck is not None and last_sample['time'] - stuck['start']['time'] >= params['stuck_low_duration']:
        stuck_events.append(_stuck_low_event(stuck['start'], last_sample, stuck['min_iam'],
                                             stuck['rows'], params))

    return samples, stuck_events, drops, recoveries, totals


def _build_iam_event(group):
    lowest = min(group, key=lambda s: s['iam'])
    event = event_span(group)
    event.update({
        'index': lowest['index'],
        'iam': lowest['iam'],
        'min_iam': min(s['iam'] for s in group),
        'max_iam': max(s['iam'] for s in group),
        'avg_iam': mean_of(group, 'iam'),
        'drop_amount': lowest['drop_amount'],
        'rpm': int(round(mean_of(group, 'rpm'))),
        'throttle': mean_of(group, 'throttle'),
        'load': mean_of(group, 'load'),
        'knock_retard': mean_of(group, 'knock_retard'),
        'event_type': lowest['event_type'],
        'severity': lowest['severity'],
    })
    return event


def _recovery_rate(recoveries):
    """Average IAM recovered per second across the recovery samples."""
    if not recoveries:
        return 0.0
    total = sum(r['recovery_amount'] for r in recoveries)
    span = recoveries[-1]['time'] - recoveries[0]['time']
    return total / span if span > 0 else 0.0


def _knock_correlation(drops, knock_events, window):
    """Percentage of IAM drops within `window` seconds of a knock event."""
    if not drops or not knock_events:
        return 0.0
    knock_times = [k['time'] for k in knock_events]
    correlated = [d for d in drops if any(abs(t - d['time']) < window for t in knock_times)]
    return len(correlated) / len(drops) * 100


def _empty_statistics(times=None):
    return {
        'total_data_points': 0,
        'current_iam': 0.0,
        'min_iam': 0.0,
        'max_iam': 0.0,
        'avg_iam': 0.0,
        'low_iam_events': 0,
        'critical_iam_events': 0,
        'stuck_low_events': 0,
        'recovery_rate': 0.0,
        'knock_correlation': 0.0,
        'iam_drops': 0,
        'time_range': time_range(times if times is not None else []),
    }


# --- Main Orchestrator Function ---

def run_iam_analysis(log, tune=None, resolver=None, params=None, knock_events=None):
    """
    Main orchestrator for the IAM analysis. A pure computational function.

    Args:
        log (pd.DataFrame): The raw log data.
        tune (TuningData, optional): Supplies 'iam_init' when present.
        resolver (ColumnResolver, optional): Shared column resolver for this log.
        params (dict, optional): Overrides for DEFAULT_PARAMS.
        knock_events (list, optional): Knock detector events used for drop correlation.

    Returns:
        dict: 'status', 'warnings', 'events', 'statistics', 'columns' and, on
              failure, 'error'.
    """
    print(" -> Initializing IAM analysis...")
    params = {**DEFAULT_PARAMS, **(params or {})}
    if tune is not None and tune.get_parameter('iam_init') is not None:
        params['iam_init'] = tune.get_parameter('iam_init')
    if knock_events is None:
        knock_events = params.get('knock_events')

    if log is None or log.empty:
        return empty_result('No log data available.', _empty_statistics())

    resolver = resolver or ColumnResolver.for_log(log)
    columns = resolver.mappings(['iam'])
    if not resolver.has('iam'):
        return empty_result('Required IAM column not found in log file.', _empty_statistics(), columns)

    signals = extract_signals(log, resolver, SIGNAL_KEYS)
    iam_values = resolver.numeric(log, 'iam').reset_index(drop=True)

    samples, stuck_events, drops, recoveries, totals = _scan_iam_samples(signals, iam_values, params)
    print(f" -> Raw IAM events detected (before grouping): {len(samples) + len(stuck_events)}")

    grouped = group_events(samples, params['grouping_window'], _build_iam_event, split_on_type_change=True)
    events = sorted(grouped + stuck_events, key=lambda e: e['time'])

    count = totals['count']
    statistics = {
        'total_data_points': count,
        'current_iam': float(totals['current']),
        'min_iam': float(totals['min']) if count else 0.0,
        'max_iam': float(totals['max']),
        'avg_iam': totals['sum'] / count if count else 0.0,
        'low_iam_events': sum(1 for e in events if e['severity'] in ('severe', 'critical')),
        'critical_iam_events': sum(1 for e in events if e['severity'] == 'critical'),
        'stuck_low_events': len(stuck_events),
        'recovery_rate': _recovery_rate(recoveries),
        'knock_correlation': _knock_correlation(drops, knock_events, params['knock_correlation_window']),
        'iam_drops': len(drops),
        'time_range': time_range(signals['time']),
    }

    print(f" -> IAM analysis complete. {len(events)} events.")
    return {
        'status': 'Success',
        'warnings': [],
        'events': events,
        'statistics': statistics,
        'columns': columns,
    }
