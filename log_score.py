"""
Log Score (Issue Compiler) Module

Collects the events of every analyzer into one list of issues with a common
shape, converts units for display (kPa -> PSI gauge, lambda -> AFR) and maps
each source's severities onto a single scale. Also provides the filter, sort
and summary helpers used by the CLI report.
"""

KPA_TO_PSI = 0.1450377377
ATMOSPHERIC_PSI = 14.696
LAMBDA_TO_AFR = 14.7

SEVERITY_RANK = {'mild': 0, 'low': 1, 'moderate': 2, 'high': 3, 'severe': 4}

SOURCE_LABELS = {
    'knock': 'Knock Analysis',
    'boost': 'Boost Control',
    'afr': 'Air/Fuel Ratio',
    'fueltrim': 'Short Term Fuel Trim',
    'longtermfueltrim': 'Long Term Fuel Trim',
    'iam': 'IAM Analysis',
    'loadlimit': 'Load Limit',
    'coolanttemp': 'Coolant Temperature',
    'iat': 'Intake Air Temperature',
}

EVENT_TYPE_FILTERS = {
    'knock': ('Knock',),
    'overshoot': ('Overshoot',),
    'undershoot': ('Undershoot',),
    'limit_violation': ('Limit Violation',),
    'lean': ('Lean',),
    'rich': ('Rich',),
    'target_mismatch': ('Target Mismatch',),
    'positive': ('Positive Trim',),
    'negative': ('Negative Trim',),
    'iam': ('IAM Drop', 'IAM Stuck Low'),
    'loadlimit': ('Load Limit Violation', 'Near Load Limit'),
    'coolanttemp': ('High Temperature', 'Elevated Temperature'),
    'iat': ('High IAT', 'Low IAT'),
}

# Boost errors above 10 kPa count as critical.
CRITICAL_BOOST_PSI = 10 * KPA_TO_PSI


# --- Helper Functions ---

def kpa_to_psi(kpa):
    return kpa * KPA_TO_PSI


def kpa_to_gauge_psi(kpa):
    return kpa_to_psi(kpa) - ATMOSPHERIC_PSI


def _value(event, key):
    value = event.get(key)
    return 0.0 if value is None else value


def _graded_severity(severity):
    """critical -> severe, severe -> high, anything else -> low."""
    if severity == 'critical':
        return 'severe'
    if severity == 'severe':
        return 'high'
    return 'low'


def _issue(source_id, event, event_type, severity, value, unit, description):
    return {
        'time': event.get('time') or 0.0,
        'source': SOURCE_LABELS[source_id],
        'source_id': source_id,
        'event_type': event_type,
        'severity': severity,
        'value': float(value),
        'value_unit': unit,
        'description': description,
        'original_event': event,
    }


def _knock_issues(events):
    issues = []
    for event in events:
        retard = _value(event, 'knock_retard')
        label = (event.get('severity') or 'mild').capitalize()
        issues.append(_issue('knock', event, 'Knock', 'high', retard, '°',
                             f"{label} knock detected: {abs(retard):.2f}° retard"))
    return issues


def _boost_issues(events):
    issues = []
    for event in events:
        event_type = event.get('event_type')
        if event_type == 'normal':
            continue
        target = _value(event, 'boost_target')
        actual = _value(event, 'actual_boost')
        error_psi = kpa_to_psi(abs(_value(event, 'boost_error')))
        target_psig = f"{kpa_to_gauge_psi(target):.2f}" if target > 0 else 'N/A'
        actual_psig = f"{kpa_to_gauge_psi(actual):.2f}" if actual > 0 else 'N/A'

        if event_type == 'limit_violation':
            limit = event.get('boost_limit')
            limit_psig = f"{kpa_to_gauge_psi(limit):.2f}" if limit else 'N/A'
            issues.append(_issue('boost', event, 'Limit Violation', 'severe', error_psi, 'PSI',
                                 f"Boost limit violation: actual {actual_psig} PSIg above limit {limit_psig} PSIg"))
            continue

        label = 'Overshoot' if event_type == 'overshoot' else 'Undershoot'
        severity = 'high' if event_type == 'overshoot' else 'low'
        issues.append(_issue('boost', event, label, severity, error_psi, 'PSI',
                             f"Boost {label.lower()}: {error_psi:.2f} PSI error "
                             f"(target: {target_psig} PSIg, actual: {actual_psig} PSIg)"))
    return issues


def _afr_issues(events):
    issues = []
    for event in events:
        event_type = event.get('event_type')
        if event_type == 'normal':
            continue
        target_lambda = _value(event, 'target_afr')
        measured_lambda = _value(event, 'measured_afr')
        target = target_lambda * LAMBDA_TO_AFR if target_lambda > 0 else 0.0
        measured = measured_lambda * LAMBDA_TO_AFR if measured_lambda > 0 else 0.0
        deviation = (measured - target) / target * 100 if target > 0 else 0.0

        if event_type == 'target_mismatch':
            label, severity = 'Target Mismatch', 'high'
        elif event_type == 'lean':
            label = 'Lean'
            severity = 'low' if target_lambda > 0 and abs(deviation) <= 5.0 else 'high'
        else:
            label, severity = 'Rich', 'low'

        target_text = f"{target:.1f}" if target > 0 else 'N/A'
        measured_text = f"{measured:.1f}" if measured > 0 else 'N/A'
        sign = '+' if deviation > 0 else ''
        issues.append(_issue('afr', event, label, severity, deviation, '%',
                             f"AFR {label.lower()}: {sign}{deviation:.2f}% deviation "
                             f"(target: {target_text} AFR, measured: {measured_text} AFR)"))
    return issues


def _trim_issues(events, source_id, field, prefix):
    issues = []
    for event in events:
        positive = event.get('event_type') == 'positive'
        trim = _value(event, field)
        direction = 'positive' if positive else 'negative'
        meaning = 'adding fuel, rich condition' if positive else 'removing fuel, lean condition'
        sign = '+' if positive else ''
        issues.append(_issue(source_id, event, 'Positive Trim' if positive else 'Negative Trim',
                             'high' if positive else 'low', trim, '%',
                             f"{prefix} {direction}: {sign}{trim:.2f}% ({meaning})"))
    return issues


def _iam_issues(events):
    issues = []
    for event in events:
        if event.get('event_type') == 'normal':
            continue
        iam_pct = _value(event, 'iam') * 100
        label = 'IAM Stuck Low' if event.get('event_type') == 'stuck_low' else 'IAM Drop'
        issues.append(_issue('iam', event, label, _graded_severity(event.get('severity')), iam_pct, '%',
                             f"{label}: IAM dropped to {iam_pct:.1f}% ({event.get('severity')} severity)"))
    return issues


def _load_issues(events):
    issues = []
    for event in events:
        if event.get('event_type') == 'normal':
            continue
        load = _value(event, 'load')
        limit = _value(event, 'load_limit')
        ratio = _value(event, 'load_ratio')
        label = 'Load Limit Violation' if event.get('event_type') == 'limit_violation' else 'Near Load Limit'
        fuel_cut = ' (Fuel Cut Active)' if event.get('fuel_cut') else ''
        issues.append(_issue('loadlimit', event, label, _graded_severity(event.get('severity')), load, 'g/rev',
                             f"{label}: Load {load:.2f} g/rev vs limit {limit:.2f} g/rev "
                             f"({ratio * 100:.1f}%){fuel_cut}"))
    return issues


def _coolant_issues(events):
    issues = []
    for event in events:
        if event.get('event_type') == 'normal':
            continue
        temp = _value(event, 'coolant_temp')
        label = 'High Temperature' if event.get('event_type') == 'high_temp' else 'Elevated Temperature'
        fan = ' (High Speed Fan)' if event.get('above_high_speed_fan') else ''
        issues.append(_issue('coolanttemp', event, label, _graded_severity(event.get('severity')), temp, '°C',
                             f"{label}: {temp:.1f}°C{fan}"))
    return issues


def _intake_issues(events):
    issues = []
    for event in events:
        if event.get('event_type') == 'normal':
            continue
        iat = _value(event, 'iat')
        label = 'High IAT' if event.get('event_type') == 'high_temp' else 'Low IAT'
        if event.get('above_high_threshold'):
            threshold = ' (Above High Threshold)'
        elif event.get('below_low_threshold'):
            threshold = ' (Below Low Threshold)'
        else:
            threshold = ''
        issues.append(_issue('iat', event, label, _graded_severity(event.get('severity')), iat, '°C',
                             f"{label}: {iat:.1f}°C{threshold}"))
    return issues


def _events_of(results, source_id):
    result = (results or {}).get(source_id)
    if not result:
        return []
    return result.get('events') or []


# --- Main Functions ---

def compile_issues(results, show_short_term_trim=False):
    """
    Builds the combined issue list from cached analyzer results.

    Args:
        results (dict): Analyzer results keyed by source id ('knock', 'boost',
                        'afr', 'fueltrim', 'longtermfueltrim', 'iam',
                        'loadlimit', 'coolanttemp', 'iat'). Missing or failed
                        sources contribute nothing.
        show_short_term_trim (bool): Include short-term fuel trim events.

    Returns:
        list[dict]: Issues sorted by time.
    """
    issues = []
    issues += _knock_issues(_events_of(results, 'knock'))
    issues += _boost_issues(_events_of(results, 'boost'))
    issues += _afr_issues(_events_of(results, 'afr'))
    if show_short_term_trim:
        issues += _trim_issues(_events_of(results, 'fueltrim'), 'fueltrim', 'short_term_trim', 'Fuel trim')
    issues += _trim_issues(_events_of(results, 'longtermfueltrim'), 'longtermfueltrim',
                           'long_term_trim', 'Long-term fuel trim')
    issues += _iam_issues(_events_of(results, 'iam'))
    issues += _load_issues(_events_of(results, 'loadlimit'))
    issues += _coolant_issues(_events_of(results, 'coolanttemp'))
    issues += _intake_issues(_events_of(results, 'iat'))
    return sorted(issues, key=lambda issue: issue['time'])


def is_critical_issue(issue):
    """Derived 'critical' predicate. It is not stored on the issue."""
    source_id = issue['source_id']
    severity = issue['severity']
    if severity == 'severe':
        return True
    if source_id == 'knock':
        return severity == 'high'
    if source_id == 'boost':
        return issue['value_unit'] == 'PSI' and abs(issue['value']) > CRITICAL_BOOST_PSI
    if source_id == 'afr':
        return severity == 'high' and abs(issue['value']) > 0.1
    if source_id in ('iam', 'coolanttemp', 'iat'):
        return severity == 'high'
    if source_id == 'loadlimit':
        return issue['event_type'] == 'Load Limit Violation'
    return False


def _matches_search(issue, term):
    fields = (
        str(issue['time']),
        issue['source'].lower(),
        issue['event_type'].lower(),
        issue['severity'].lower(),
        issue['description'].lower(),
        str(issue['value']),
    )
    return any(term in field for field in fields)


def filter_issues(issues, source='all', event_type='all', severity='all', search=''):
    """Applies the source, event type, severity and free-text filters in turn."""
    filtered = list(issues)
    if source != 'all':
        filtered = [i for i in filtered if i['source_id'] == source]
    if event_type != 'all':
        allowed = EVENT_TYPE_FILTERS.get(event_type)
        if allowed is not None:
            filtered = [i for i in filtered if i['event_type'] in allowed]
    if severity == 'critical':
        filtered = [i for i in filtered if is_critical_issue(i)]
    elif severity != 'all':
        filtered = [i for i in filtered if i['severity'] == severity]
    term = (search or '').strip().lower()
    if term:
        filtered = [i for i in filtered if _matches_search(i, term)]
    return filtered


def _sort_key(column):
    if column == 'severity':
        return lambda i: SEVERITY_RANK.get(i['severity'], -1)
    if column == 'value':
        return lambda i: abs(i['value'])
    if column in ('source', 'event_type'):
        return lambda i: i[column].lower()
    return lambda i: i[column]


def sort_issues(issues, column='time', direction='asc'):
    """
    Sorts issues by one column, or by a list of (column, direction) pairs.
    Multi-key sorts are stable: later keys only break ties of earlier ones.
    """
    keys = column if isinstance(column, (list, tuple)) else [(column, direction)]
    result = list(issues)
    for col, dirn in reversed(keys):
        result.sort(key=_sort_key(col), reverse=(dirn == 'desc'))
    return result


def summarize_issues(issues):
    """Total count, critical count and per-source counts."""
    by_source = {}
    for issue in issues:
        by_source[issue['source']] = by_source.get(issue['source'], 0) + 1
    return {
        'total': len(issues),
        'critical': sum(1 for i in issues if is_critical_issue(i)),
        'by_source': by_source,
    }
