import pytest

from log_score import (compile_issues, filter_issues, is_critical_issue, kpa_to_gauge_psi,
                       sort_issues, summarize_issues)


def _result(events):
    return {'status': 'Success', 'warnings': [], 'events': events, 'statistics': {}, 'columns': {}}


@pytest.fixture
def results():
    return {
        'knock': _result([{'time': 5.0, 'knock_retard': -3.0, 'severity': 'moderate'}]),
        'boost': _result([
            {'time': 1.0, 'event_type': 'overshoot', 'boost_target': 200.0,
             'actual_boost': 220.0, 'boost_error': 20.0},
            {'time': 2.0, 'event_type': 'undershoot', 'boost_target': 200.0,
             'actual_boost': 195.0, 'boost_error': -5.0},
        ]),
        'afr': _result([
            {'time': 3.0, 'event_type': 'lean', 'target_afr': 1.0, 'measured_afr': 1.03},
            {'time': 4.0, 'event_type': 'lean', 'target_afr': 0.8, 'measured_afr': 0.88},
            {'time': 4.5, 'event_type': 'rich', 'target_afr': 0.8, 'measured_afr': 0.72},
        ]),
        'fueltrim': _result([{'time': 6.0, 'event_type': 'positive', 'short_term_trim': 12.0}]),
        'longtermfueltrim': _result([{'time': 7.0, 'event_type': 'negative', 'long_term_trim': -6.0}]),
        'iam': _result([{'time': 8.0, 'event_type': 'stuck_low', 'iam': 0.15, 'severity': 'critical'}]),
        'loadlimit': _result([{'time': 9.0, 'event_type': 'limit_violation', 'load': 2.1,
                               'load_limit': 2.0, 'load_ratio': 1.05, 'severity': 'critical',
                               'fuel_cut': True}]),
        'coolanttemp': _result([{'time': 10.0, 'event_type': 'elevated_temp', 'coolant_temp': 104.0,
                                 'severity': 'moderate', 'above_high_speed_fan': True}]),
        'iat': _result([{'time': 11.0, 'event_type': 'high_temp', 'iat': 55.0, 'severity': 'severe',
                         'above_high_threshold': True}]),
    }


def test_issues_are_sorted_and_short_term_trim_is_off_by_default(results):
    issues = compile_issues(results)
    assert [i['time'] for i in issues] == sorted(i['time'] for i in issues)
    assert 'fueltrim' not in {i['source_id'] for i in issues}
    assert 'fueltrim' in {i['source_id'] for i in compile_issues(results, show_short_term_trim=True)}


def test_knock_issues_are_always_high(results):
    knock = [i for i in compile_issues(results) if i['source_id'] == 'knock'][0]
    assert knock['severity'] == 'high'
    assert knock['description'] == 'Moderate knock detected: 3.00° retard'


def test_boost_is_converted_to_psi(results):
    boost = [i for i in compile_issues(results) if i['source_id'] == 'boost']
    assert boost[0]['value'] == pytest.approx(20.0 * 0.1450377377)
    assert boost[0]['value_unit'] == 'PSI'
    assert boost[0]['severity'] == 'high'
    assert boost[1]['severity'] == 'low'
    assert f"actual: {kpa_to_gauge_psi(220.0):.2f} PSIg" in boost[0]['description']


def test_afr_lean_within_five_percent_is_low(results):
    afr = [i for i in compile_issues(results) if i['source_id'] == 'afr']
    assert [i['severity'] for i in afr] == ['low', 'high', 'low']
    assert afr[1]['value'] == pytest.approx(10.0)
    assert afr[1]['description'] == 'AFR lean: +10.00% deviation (target: 11.8 AFR, measured: 12.9 AFR)'


def test_graded_sources(results):
    by_source = {i['source_id']: i for i in compile_issues(results)}
    assert by_source['iam']['event_type'] == 'IAM Stuck Low'
    assert by_source['iam']['severity'] == 'severe'
    assert by_source['iam']['value'] == pytest.approx(15.0)
    assert by_source['loadlimit']['description'].endswith('(Fuel Cut Active)')
    assert by_source['coolanttemp']['severity'] == 'low'
    assert by_source['coolanttemp']['description'] == 'Elevated Temperature: 104.0°C (High Speed Fan)'
    assert by_source['iat']['severity'] == 'high'
    assert by_source['longtermfueltrim']['event_type'] == 'Negative Trim'


def test_critical_predicate(results):
    issues = compile_issues(results)
    critical = {i['source_id'] for i in issues if is_critical_issue(i)}
    assert critical == {'knock', 'boost', 'afr', 'iam', 'loadlimit', 'iat'}
    assert len(filter_issues(issues, severity='critical')) == summarize_issues(issues)['critical']


def test_filters(results):
    issues = compile_issues(results, show_short_term_trim=True)
    assert len(filter_issues(issues, source='boost')) == 2
    assert [i['event_type'] for i in filter_issues(issues, event_type='undershoot')] == ['Undershoot']
    assert [i['source_id'] for i in filter_issues(issues, event_type='iat')] == ['iat']
    assert [i['source_id'] for i in filter_issues(issues, search='fan')] == ['coolanttemp']


def test_multi_key_sort_is_stable(results):
    issues = compile_issues(results)
    ordered = sort_issues(issues, [('severity', 'desc'), ('time', 'asc')])
    ranks = [i['severity'] for i in ordered]
    assert ranks[:2] == ['severe', 'severe']
    severe_times = [i['time'] for i in ordered if i['severity'] == 'severe']
    assert severe_times == sorted(severe_times)
    assert sort_issues(issues, 'value', 'desc')[0]['source_id'] == 'coolanttemp'


def test_summary_counts_by_source(results):
    summary = summarize_issues(compile_issues(results))
    assert summary['total'] == 11
    assert summary['by_source']['Boost Control'] == 2
