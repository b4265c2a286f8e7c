"""
Temperature (TEMP) Analysis Module

Threshold checks for engine coolant temperature and intake air temperature.
Both follow the same classify -> group -> summarize pattern as the other
analyzers, just with a simpler threshold table.
"""

from column_mapper import ColumnResolver
from utils import empty_result, event_span, extract_signals, group_events, mean_of, time_range

COOLANT_PARAMS = {
    'warning_temp': 100.0,
    'critical_temp': 110.0,
    'grouping_window': 1.0,
}

INTAKE_PARAMS = {
    'low_threshold': 0.0,
    'high_threshold': 50.0,
    'critical_threshold': 60.0,
    'grouping_window': 0.5,
}

SIGNAL_KEYS = ['time', 'rpm', 'throttle', 'load']


# --- Helper Functions ---

def _classify_coolant(temp, params, fan_temp):
    if temp >= params['critical_temp']:
        event_type, severity = 'high_temp', 'critical'
    elif temp >= params['warning_temp']:
        event_type, severity = 'elevated_temp', 'moderate'
    else:
        return None
    return {'event_type': event_type, 'severity': severity,
            'above_high_speed_fan': bool(temp >= fan_temp)}


def _classify_intake(temp, params, _fan_temp=None):
    if temp >= params['critical_threshold']:
        event_type, severity = 'high_temp', 'critical'
    elif temp >= params['high_threshold']:
        event_type, severity = 'high_temp', 'severe'
    elif temp < params['low_threshold']:
        event_type, severity = 'low_temp', 'mild'
    else:
        return None
    return {'event_type': event_type, 'severity': severity,
            'above_high_threshold': event_type == 'high_temp',
            'below_low_threshold': event_type == 'low_temp'}


_SEVERITY_RANK = {'mild': 0, 'moderate': 1, 'severe': 2, 'critical': 3}


def _make_temp_event_builder(field):
    def _build_temp_event(group):
        if group[0]['event_type'] == 'low_temp':
            extreme = min(group, key=lambda s: s['temp'])
        else:
            extreme = max(group, key=lambda s: s['temp'])
        worst = max(group, key=lambda s: _SEVERITY_RANK[s['severity']])

        event = event_span(group)
        event.update({
            'index': extreme['index'],
            field: extreme['temp'],
            'avg_temp': mean_of(group, 'temp'),
            'rpm': int(round(mean_of(group, 'rpm'))),
            'throttle': mean_of(group, 'throttle'),
            'load': mean_of(group, 'load'),
            'event_type': extreme['event_type'],
            'severity': worst['severity'],
        })
        for flag in ('above_high_speed_fan', 'above_high_threshold', 'below_low_threshold'):
            if flag in extreme:
                event[flag] = any(s.get(flag) for s in group)
        return event
    return _build_temp_event


def _empty_statistics(times=None):
    return {
        'total_data_points': 0,
        'max_temp': 0.0,
        'min_temp': 0.0,
        'avg_temp': 0.0,
        'time_above_warning': 0.0,
        'total_events': 0,
        'critical_events': 0,
        'high_temp_events': 0,
        'elevated_temp_events': 0,
        'low_temp_events': 0,
        'time_range': time_range(times if times is not None else []),
    }


def _run_temperature_analysis(log, resolver, signal, field, classify, params, warning_temp, fan_temp, label):
    if log is None or log.empty:
        return empty_result('No log data available.', _empty_statistics())

    resolver = resolver or ColumnResolver.for_log(log)
    columns = resolver.mappings([signal])
    if not resolver.has(signal):
        return empty_result(f"Required {label} column not found in log file.", _empty_statistics(), columns)

    signals = extract_signals(log, resolver, SIGNAL_KEYS)
    temps = resolver.raw(log, signal).reset_index(drop=True)
    valid = temps.notna()
    signals, temps = signals[valid], temps[valid]
    if temps.empty:
        return empty_result(f"No valid {label} data found.", _empty_statistics(signals['time']), columns)

    samples = []
    for idx, row in signals.iterrows():
        temp = float(temps.loc[idx])
        classification = classify(temp, params, fan_temp)
        if classification is None:
            continue
        sample = {
            'index': int(idx),
            'time': float(row['time']),
            'temp': temp,
            'rpm': float(row['rpm']),
            'throttle': float(row['throttle']),
            'load': float(row['load']),
        }
        sample.update(classification)
        samples.append(sample)

    events = group_events(samples, params['grouping_window'], _make_temp_event_builder(field), by='event_type')

    statistics = {
        'total_data_points': int(len(temps)),
        'max_temp': float(temps.max()),
        'min_temp': float(temps.min()),
        'avg_temp': float(temps.mean()),
        'time_above_warning': float((temps >= warning_temp).sum() / len(temps) * 100),
        'total_events': len(events),
        'critical_events': sum(1 for e in events if e['severity'] == 'critical'),
        'high_temp_events': sum(1 for e in events if e['event_type'] == 'high_temp'),
        'elevated_temp_events': sum(1 for e in events if e['event_type'] == 'elevated_temp'),
        'low_temp_events': sum(1 for e in events if e['event_type'] == 'low_temp'),
        'time_range': time_range(signals['time']),
    }
    return {
        'status': 'Success',
        'warnings': [],
        'events': events,
        'statistics': statistics,
        'columns': columns,
    }


# --- Main Orchestrator Functions ---

def run_coolant_analysis(log, tune=None, resolver=None, params=None):
    """Coolant temperature analysis; the fan flag uses the tune's 'fan_high_speed_temp' when present."""
    print(" -> Initializing coolant temperature analysis...")
    params = {**COOLANT_PARAMS, **(params or {})}
    fan_temp = tune.get_parameter('fan_high_speed_temp') if tune is not None else None
    if fan_temp is None:
        fan_temp = params['warning_temp']

    result = _run_temperature_analysis(log, resolver, 'coolant_temp', 'coolant_temp', _classify_coolant,
                                       params, params['warning_temp'], fan_temp, 'coolant temperature')
    print(" -> Coolant temperature analysis complete.")
    return result


def run_intake_analysis(log, tune=None, resolver=None, params=None):
    """Intake air temperature analysis."""
    print(" -> Initializing intake air temperature analysis...")
    params = {**INTAKE_PARAMS, **(params or {})}
    result = _run_temperature_analysis(log, resolver, 'intake_temp', 'iat', _classify_intake,
                                       params, params['high_threshold'], None, 'intake air temperature')
    print(" -> Intake air temperature analysis complete.")
    return result
