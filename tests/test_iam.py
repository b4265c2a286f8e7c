import numpy as np
import pytest

from IAM import run_iam_analysis

IAM_COL = 'Ignition Advance Multiplier'


def _iam_log(make_log, iam):
    iam = np.asarray(iam, dtype=float)
    return make_log(len(iam), {
        IAM_COL: iam,
        'Engine Speed (rpm)': 3000,
        'Load (MAF) (g/rev)': 1.2,
        'Throttle Position (%)': 50.0,
    }, dt=0.1)


def test_stuck_low_interval_is_reported(make_log):
    iam = np.ones(100)
    iam[11:71] = 0.25  # 1.1 s .. 7.0 s
    result = run_iam_analysis(_iam_log(make_log, iam))

    stuck = [e for e in result['events'] if e['event_type'] == 'stuck_low']
    assert len(stuck) == 1
    assert stuck[0]['time'] == pytest.approx(1.1)
    assert stuck[0]['duration'] == pytest.approx(6.0)
    assert stuck[0]['severity'] == 'severe'
    assert result['statistics']['stuck_low_events'] == 1
    assert result['statistics']['min_iam'] == pytest.approx(0.25)


def test_stuck_low_still_open_at_end_of_log(make_log):
    iam = np.ones(80)
    iam[10:] = 0.15
    result = run_iam_analysis(_iam_log(make_log, iam))
    stuck = [e for e in result['events'] if e['event_type'] == 'stuck_low']
    assert len(stuck) == 1
    assert stuck[0]['severity'] == 'critical'


def test_low_iam_events_and_drops(make_log):
    iam = np.ones(30)
    iam[10:13] = 0.25
    result = run_iam_analysis(_iam_log(make_log, iam))
    low = [e for e in result['events'] if e['event_type'] == 'low_iam']
    assert len(low) == 1
    assert low[0]['severity'] == 'severe'
    assert result['statistics']['iam_drops'] == 1
    assert result['statistics']['stuck_low_events'] == 0


def test_percent_iam_is_scaled(make_log):
    result = run_iam_analysis(_iam_log(make_log, np.full(10, 100.0)))
    assert result['statistics']['max_iam'] == pytest.approx(1.0)
    assert result['events'] == []


def test_knock_correlation(make_log):
    iam = np.ones(30)
    iam[10:13] = 0.25
    log = _iam_log(make_log, iam)
    knock_events = [{'time': 0.8}]
    result = run_iam_analysis(log, knock_events=knock_events)
    assert result['statistics']['knock_correlation'] == pytest.approx(100.0)
    assert run_iam_analysis(log)['statistics']['knock_correlation'] == 0.0


def test_iam_grouping_window_boundary(make_log):
    iam = np.ones(40)
    iam[[5, 15]] = 0.25  # 1.0 s apart
    low = [e for e in run_iam_analysis(_iam_log(make_log, iam))['events'] if e['event_type'] == 'low_iam']
    assert len(low) == 1

    iam = np.ones(40)
    iam[[5, 16]] = 0.25  # 1.1 s apart
    low = [e for e in run_iam_analysis(_iam_log(make_log, iam))['events'] if e['event_type'] == 'low_iam']
    assert len(low) == 2


def test_missing_iam_column(make_log):
    result = run_iam_analysis(make_log(3, {'Engine Speed (rpm)': 3000}))
    assert result['status'] == 'Failure'
