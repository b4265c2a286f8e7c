import numpy as np
import pytest

from KNK import categorize_severity, filter_knock_events, run_knock_analysis


def _knock_log(make_log, knock_times, retard=-5.0, rpm=3000, load=1.0):
    n = 41
    times = np.round(9.90 + np.arange(n) * 0.01, 2)
    knock = np.where(np.isin(times, np.round(knock_times, 2)), retard, 0.0)
    return make_log(n, {
        'Knock Retard (°)': knock,
        'Engine Speed (rpm)': rpm,
        'Load (MAF) (g/rev)': load,
        'Throttle Position (%)': 80.0,
    }, dt=0.01, start=9.90)


def test_consecutive_knock_samples_form_one_severe_event(make_log):
    log = _knock_log(make_log, [10.00, 10.01, 10.02, 10.03, 10.04])
    result = run_knock_analysis(log)

    assert result['status'] == 'Success'
    assert len(result['events']) == 1
    event = result['events'][0]
    assert event['time'] == pytest.approx(10.00)
    assert event['end_time'] == pytest.approx(10.04)
    assert event['duration'] == pytest.approx(0.04)
    assert event['severity'] == 'severe'
    assert event['knock_retard'] == pytest.approx(-5.0)
    assert event['event_count'] == 5
    assert result['statistics']['severe_events'] == 1


def test_knock_grouping_window_boundary(make_log):
    merged = run_knock_analysis(_knock_log(make_log, [10.00, 10.10]))
    split = run_knock_analysis(_knock_log(make_log, [10.00, 10.11]))
    assert len(merged['events']) == 1
    assert len(split['events']) == 2


def test_severity_thresholds_and_low_load_shift():
    assert categorize_severity(-6.1, 1.0) == 'critical'
    assert categorize_severity(-5.9, 1.0) == 'severe'
    assert categorize_severity(-3.8, 1.0) == 'moderate'
    assert categorize_severity(-1.0, 1.0) == 'mild'
    # Below 0.81 g/rev every boundary moves up by 0.5 degrees.
    assert categorize_severity(-3.8, 0.5) == 'severe'
    assert categorize_severity(-5.6, 0.5) == 'critical'


def test_samples_below_rpm_min_are_ignored(make_log):
    log = _knock_log(make_log, [10.00, 10.01], rpm=800)
    assert run_knock_analysis(log)['events'] == []


def test_missing_knock_column_is_a_warning(make_log):
    log = make_log(5, {'Engine Speed (rpm)': 3000})
    result = run_knock_analysis(log)
    assert result['status'] == 'Success'
    assert result['events'] == []
    assert result['warnings']


def test_missing_time_column_is_a_failure(make_log):
    log = make_log(5, {'Knock Retard (°)': -3.0}).drop(columns=['Time (s)'])
    result = run_knock_analysis(log)
    assert result['status'] == 'Failure'
    assert result['statistics']['total_events'] == 0


def test_knock_analysis_is_deterministic(make_log, tune):
    log = _knock_log(make_log, [10.00, 10.01, 10.20, 10.21])
    assert run_knock_analysis(log, tune) == run_knock_analysis(log, tune)


def test_filter_knock_events():
    events = [
        {'time': 1.0, 'knock_retard': -5.0, 'rpm': 3000, 'throttle': 80.0, 'severity': 'severe'},
        {'time': 2.0, 'knock_retard': -1.0, 'rpm': 4500, 'throttle': 60.0, 'severity': 'mild'},
    ]
    assert len(filter_knock_events(events, severity='severe')) == 1
    assert [e['rpm'] for e in filter_knock_events(events, search_term='4500')] == [4500]
