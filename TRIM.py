"""
Fuel Trim (TRIM) Analysis Module

This module contains pure, non-UI functions to find abnormal short-term and
long-term fuel trim corrections. Both variants share one classification
pipeline; short-term trim additionally gets a stricter check while the ECU is
in open-loop power enrichment, where it should sit near 0%.
"""

from column_mapper import ColumnResolver
from utils import empty_result, event_span, extract_signals, filter_by_duration, group_events, mean_of, time_range

STFT_PARAMS = {
    'signal': 'stft',
    'value_field': 'short_term_trim',
    'label': 'Short term fuel trim',
    'positive_threshold': 10.0,
    'negative_threshold': -10.0,
    'pe_abnormal_threshold': 5.0,
    'check_pe_mode': True,
    'trim_limit_warning': 20.0,
    'trim_limit_max': 25.0,
    'cold_start_temp': 60.0,
    'accel_throttle': 50.0,
    'accel_load': 1.0,
    'grouping_window': 0.5,
    'min_duration': 0.3,
}

LTFT_PARAMS = dict(STFT_PARAMS, **{
    'signal': 'ltft',
    'value_field': 'long_term_trim',
    'label': 'Long term fuel trim',
    'positive_threshold': 5.0,
    'negative_threshold': -5.0,
    'check_pe_mode': False,
})

SIGNAL_KEYS = ['time', 'rpm', 'load', 'throttle', 'afr', 'coolant_temp', 'intake_temp']


# --- Helper Functions ---

def _trim_severity(trim, params):
    magnitude = abs(trim)
    if magnitude >= params['trim_limit_max']:
        return 'critical'
    if magnitude >= params['trim_limit_warning']:
        return 'severe'
    return 'normal'


def _scan_trim_samples(signals, tune, params):
    """Classifies each sample and accumulates the closed-loop statistics."""
    field = params['value_field']
    totals = {'count': 0, 'sum': 0.0, 'abs_sum': 0.0, 'in_target': 0,
              'max_positive': 0.0, 'max_negative': 0.0, 'pe_samples': 0}
    samples = []

    if tune is not None and params['check_pe_mode']:
        pe_mode = tune.pe_mode_mask(signals['rpm'], signals['load'], signals['throttle'])
    else:
        pe_mode = None

    for idx, row in signals.iterrows():
        trim = row['trim']
        base = {
            'index': int(idx),
            'time': float(row['time']),
            field: float(trim),
            'trim': float(trim),
            'rpm': float(row['rpm']),
            'throttle': float(row['throttle']),
            'load': float(row['load']),
            'afr': float(row['afr']),
        }

        if pe_mode is not None and pe_mode.loc[idx]:
            totals['pe_samples'] += 1
            if abs(trim) > params['pe_abnormal_threshold']:
                base.update({
                    'event_type': 'positive' if trim > 0 else 'negative',
                    'severity': 'normal',
                    'is_pe_mode': True,
                    'is_abnormal_in_pe_mode': True,
                    'is_cold_start': False,
                    'is_acceleration': False,
                })
                samples.append(base)
            continue

        totals['count'] += 1
        totals['sum'] += trim
        totals['abs_sum'] += abs(trim)
        if params['negative_threshold'] <= trim <= params['positive_threshold']:
            totals['in_target'] += 1
        totals['max_positive'] = max(totals['max_positive'], trim)
        totals['max_negative'] = min(totals['max_negative'], trim)

        if trim > params['positive_threshold']:
            event_type = 'positive'
        elif trim < params['negative_threshold']:
            event_type = 'negative'
        else:
            continue

        base.update({
            'event_type': event_type,
            'severity': _trim_severity(trim, params),
            'is_pe_mode': False,
            'is_abnormal_in_pe_mode': False,
            'is_cold_start': bool(row['coolant_temp'] < params['cold_start_temp']),
            'is_acceleration': bool(row['throttle'] > params['accel_throttle'] and row['load'] > params['accel_load']),
            'ect': float(row['coolant_temp']),
            'iat': float(row['intake_temp']),
        })
        samples.append(base)
    return samples, totals


def _make_trim_event_builder(field):
    def _build_trim_event(group):
        most_severe = max(group, key=lambda s: abs(s['trim']))
        event = event_span(group)
        event.update({
            'index': most_severe['index'],
            field: most_severe['trim'],
            'trim': most_severe['trim'],
            'avg_trim': mean_of(group, 'trim'),
            'rpm': int(round(mean_of(group, 'rpm'))),
            'throttle': mean_of(group, 'throttle'),
            'load': mean_of(group, 'load'),
            'afr': mean_of(group, 'afr'),
            'event_type': most_severe['event_type'],
            'severity': most_severe['severity'],
            'is_pe_mode': any(s['is_pe_mode'] for s in group),
            'is_abnormal_in_pe_mode': any(s['is_abnormal_in_pe_mode'] for s in group),
            'is_cold_start': any(s['is_cold_start'] for s in group),
            'is_acceleration': any(s['is_acceleration'] for s in group),
        })
        return event
    return _build_trim_event


def _empty_statistics(times=None):
    return {
        'total_data_points': 0,
        'avg_trim': 0.0,
        'avg_trim_abs': 0.0,
        'max_positive': 0.0,
        'max_negative': 0.0,
        'in_target_percent': 0.0,
        'abnormal_events': 0,
        'positive_events': 0,
        'negative_events': 0,
        'pe_mode_data_points': 0,
        'time_range': time_range(times if times is not None else []),
    }


def _calculate_statistics(events, totals, log_times):
    count = totals['count']
    return {
        'total_data_points': count,
        'avg_trim': totals['sum'] / count if count else 0.0,
        'avg_trim_abs': totals['abs_sum'] / count if count else 0.0,
        'max_positive': float(totals['max_positive']),
        'max_negative': float(totals['max_negative']),
        'in_target_percent': totals['in_target'] / count * 100 if count else 0.0,
        'abnormal_events': len(events),
        'positive_events': sum(1 for e in events if e['event_type'] == 'positive'),
        'negative_events': sum(1 for e in events if e['event_type'] == 'negative'),
        'pe_mode_data_points': totals['pe_samples'],
        'time_range': time_range(log_times),
    }


def _run_trim_analysis(log, tune, resolver, params):
    if log is None or log.empty:
        return empty_result('No log data available.', _empty_statistics())

    resolver = resolver or ColumnResolver.for_log(log)
    signal = params['signal']
    columns = resolver.mappings([signal])
    if not resolver.has(signal):
        return empty_result(f"Required {params['label'].lower()} column not found in log file.",
                            _empty_statistics(), columns)

    signals = extract_signals(log, resolver, SIGNAL_KEYS)
    signals['trim'] = resolver.numeric(log, signal).reset_index(drop=True)

    samples, totals = _scan_trim_samples(signals, tune, params)
    print(f" -> Raw {signal.upper()} events detected (before grouping): {len(samples)}")

    grouped = group_events(samples, params['grouping_window'],
                           _make_trim_event_builder(params['value_field']), by='event_type')
    events = filter_by_duration(grouped, params['min_duration'])
    print(f" -> {signal.upper()} events after minimum duration filter ({params['min_duration']}s): {len(events)}")

    return {
        'status': 'Success',
        'warnings': [],
        'events': events,
        'statistics': _calculate_statistics(events, totals, signals['time']),
        'columns': columns,
    }


# --- Main Orchestrator Functions ---

def run_stft_analysis(log, tune=None, resolver=None, params=None):
    """
    Short-term fuel trim analysis. Samples in PE mode are judged against a
    stricter threshold and kept out of the closed-loop statistics.
    """
    print(" -> Initializing STFT analysis...")
    result = _run_trim_analysis(log, tune, resolver, {**STFT_PARAMS, **(params or {})})
    print(" -> STFT analysis complete.")
    return result


def run_ltft_analysis(log, tune=None, resolver=None, params=None):
    """Long-term fuel trim analysis."""
    print(" -> Initializing LTFT analysis...")
    result = _run_trim_analysis(log, tune, resolver, {**LTFT_PARAMS, **(params or {})})
    print(" -> LTFT analysis complete.")
    return result
