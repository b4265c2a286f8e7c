import numpy as np
import pytest

from TEMP import run_coolant_analysis, run_intake_analysis
from tuning_loader import TuningData

COOLANT = 'Coolant Temperature (°C)'
IAT = 'Intake Air Temperature (°C)'


def _temp_log(make_log, column, temps, dt=0.1):
    temps = np.asarray(temps, dtype=float)
    return make_log(len(temps), {column: temps, 'Engine Speed (rpm)': 3000}, dt=dt)


def test_coolant_thresholds(make_log):
    temps = np.full(60, 90.0)
    temps[5:10] = 105.0
    temps[30:35] = 112.0
    result = run_coolant_analysis(_temp_log(make_log, COOLANT, temps))

    events = result['events']
    assert [(e['event_type'], e['severity']) for e in events] == [
        ('elevated_temp', 'moderate'), ('high_temp', 'critical')]
    assert events[1]['coolant_temp'] == pytest.approx(112.0)
    assert events[0]['above_high_speed_fan']
    assert result['statistics']['max_temp'] == pytest.approx(112.0)


def test_fan_temperature_comes_from_tune(make_log):
    tune = TuningData({'maps': [{'id': 'fan_high_speed_temp', 'data': ['108']}]})
    temps = np.full(20, 90.0)
    temps[5:10] = 105.0
    event = run_coolant_analysis(_temp_log(make_log, COOLANT, temps), tune)['events'][0]
    assert not event['above_high_speed_fan']


def test_coolant_grouping_window_boundary(make_log):
    temps = np.full(40, 90.0)
    temps[[0, 10]] = 105.0  # 1.0 s apart
    assert len(run_coolant_analysis(_temp_log(make_log, COOLANT, temps))['events']) == 1

    temps = np.full(40, 90.0)
    temps[[0, 11]] = 105.0  # 1.1 s apart
    assert len(run_coolant_analysis(_temp_log(make_log, COOLANT, temps))['events']) == 2


def test_intake_high_and_low(make_log):
    temps = np.full(40, 30.0)
    temps[5:8] = 55.0
    temps[20:23] = -5.0
    events = run_intake_analysis(_temp_log(make_log, IAT, temps))['events']

    assert [(e['event_type'], e['severity']) for e in events] == [
        ('high_temp', 'severe'), ('low_temp', 'mild')]
    assert events[0]['above_high_threshold']
    assert events[1]['below_low_threshold']
    assert events[1]['iat'] == pytest.approx(-5.0)


def test_intake_grouping_window_boundary(make_log):
    temps = np.full(40, 30.0)
    temps[[0, 5]] = 65.0  # 0.5 s apart
    assert len(run_intake_analysis(_temp_log(make_log, IAT, temps))['events']) == 1

    temps = np.full(40, 30.0)
    temps[[0, 6]] = 65.0  # 0.6 s apart
    assert len(run_intake_analysis(_temp_log(make_log, IAT, temps))['events']) == 2


def test_missing_temperature_columns(make_log):
    log = make_log(3, {'Engine Speed (rpm)': 3000})
    assert run_coolant_analysis(log)['status'] == 'Failure'
    assert run_intake_analysis(log)['status'] == 'Failure'
