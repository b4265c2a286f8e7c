import copy

import numpy as np
import pytest

from AUTOTUNE import download_tune, run_autotune_analysis
from tuning_loader import TuningData


def _autotune_log(make_log, n=30, rpm=3500, load=1.6, throttle=80.0, afr=0.88, target=0.80,
                  stft=0.0, ltft=0.0, maf_voltage=2.5):
    return make_log(n, {
        'Engine Speed (rpm)': rpm,
        'Load (MAF) (g/rev)': load,
        'Throttle Position (%)': throttle,
        'Air/Fuel Sensor #1 (λ)': afr,
        'Power Mode - Fuel Ratio Target (λ)': target,
        'Fuel Trim - Short Term (%)': stft,
        'Fuel Trim - Long Term (%)': ltft,
        'Mass Air Flow Voltage (V)': maf_voltage,
    })


def test_open_loop_lean_cell_is_richened_and_clamped(make_log, tune):
    result = run_autotune_analysis(_autotune_log(make_log), tune)

    assert result['status'] == 'Success'
    assert result['total_open_samples'] == 30
    assert result['total_closed_samples'] == 0
    assert result['open_summary'][0]['mean_ratio'] == pytest.approx(1.10)
    assert result['suggested_table'][2][3]['suggested'] == pytest.approx(21.0)
    assert result['suggested_table'][2][3]['source'] == 'open'
    assert result['fuel_base_strings'][2] == '20.0, 20.0, 20.0, 21.0, 20.0'

    assert len(result['clamped_modifications']) == 1
    clamped = result['clamped_modifications'][0]
    assert clamped['change_pct'] == pytest.approx(10.0)
    assert clamped['suggested'] == pytest.approx(22.0)
    assert clamped['source'] == 'open'


def test_open_loop_maf_scale_correction(make_log, tune):
    result = run_autotune_analysis(_autotune_log(make_log), tune)
    assert result['maf_voltage_axis'] == pytest.approx([0.0, 1.0, 2.0, 3.0, 4.0, 5.0])
    assert result['maf_suggested_scale'][2] == pytest.approx(5.25)
    assert result['maf_scale_strings'] == ['0.00, 2.00, 5.25, 10.00, 20.00, 40.00']
    assert result['maf_hit_counts'][2] == 30
    assert result['maf_combined_changes'][2]['metric_label'] == 'Lambda Error'


def test_closed_loop_trims_are_applied_without_clamp(make_log, tune):
    log = _autotune_log(make_log, rpm=2500, load=0.8, throttle=10.0, afr=1.0, target=1.0,
                        stft=2.0, ltft=2.0, maf_voltage=1.5)
    result = run_autotune_analysis(log, tune)

    assert result['total_closed_samples'] == 30
    assert result['closed_summary'][0]['mean_trim'] == pytest.approx(4.0)
    assert result['suggested_table'][1][1]['suggested'] == pytest.approx(20.8)
    assert result['suggested_table'][1][1]['source'] == 'closed'
    assert result['clamped_modifications'] == []
    assert result['maf_suggested_scale'][1] == pytest.approx(2.08)


def test_disabled_change_limit_applies_full_correction(make_log, tune):
    result = run_autotune_analysis(_autotune_log(make_log), tune, change_limit=0)
    assert result['suggested_table'][2][3]['suggested'] == pytest.approx(22.0)
    assert result['clamped_modifications'] == []


def test_min_samples_gate(make_log, tune):
    result = run_autotune_analysis(_autotune_log(make_log), tune, min_samples=31)
    assert result['modifications_applied'] == 0
    assert result['maf_modifications_applied'] == 0
    assert result['fuel_base_strings'][2] == '20.0, 20.0, 20.0, 20.0, 20.0'
    # Coverage is still reported for cells below the threshold.
    assert result['hit_counts'][2][3] == 30


def test_samples_on_cell_edge_are_filtered_but_counted(make_log, tune):
    rpm = np.full(31, 3500.0)
    rpm[-1] = 3000.0
    result = run_autotune_analysis(_autotune_log(make_log, n=31, rpm=rpm), tune)

    assert result['filtered_by_center_weight'] == 1
    assert result['hit_counts'][2][3] == 31
    assert result['open_summary'][0]['samples'] == 30


def test_rows_without_lambda_are_skipped(make_log, tune):
    afr = np.full(30, 0.88)
    afr[:3] = np.nan
    maf = np.full(30, 2.5)
    maf[3:5] = np.nan
    result = run_autotune_analysis(_autotune_log(make_log, afr=afr, maf_voltage=maf), tune)
    assert result['skipped_rows'] == 3
    assert result['rows_missing_maf_voltage'] == 2
    assert result['total_open_samples'] == 27
    assert result['total_maf_open_samples'] == 25


def test_analysis_is_repeatable_and_downloads(make_log, tune):
    log = _autotune_log(make_log)
    first = run_autotune_analysis(log, tune)
    second = run_autotune_analysis(log, tune)
    assert first['fuel_base_strings'] == second['fuel_base_strings']
    assert first['maf_scale_strings'] == second['maf_scale_strings']

    doc = download_tune(first, tune)
    assert 'error' not in doc
    tuned = TuningData(doc)
    assert tuned.get_table('fuel_base')[2, 3] == pytest.approx(21.0)
    assert tuned.get_array('maf_scale')[2] == pytest.approx(5.25)
    # The loaded tune itself is left untouched.
    assert tune.get_table('fuel_base')[2, 3] == pytest.approx(20.0)

    # Downloading again into the exported document leaves it unchanged.
    again = download_tune(first, tune, base_doc=doc)
    assert again['maps'] == doc['maps']
    rerun = run_autotune_analysis(log, tuned, change_limit=0)
    assert rerun['suggested_table'][2][3]['suggested'] == pytest.approx(23.1)


def test_download_into_matching_base_tune(make_log, tune, tune_doc):
    result = run_autotune_analysis(_autotune_log(make_log), tune)
    base = copy.deepcopy(tune_doc)
    base['name'] = 'base tune'
    doc = download_tune(result, tune, base_doc=base)
    assert doc['name'] == 'base tune'
    assert TuningData(doc).get_table('fuel_base')[2, 3] == pytest.approx(21.0)


def test_download_rejects_mismatched_base_tune(make_log, tune, tune_doc):
    result = run_autotune_analysis(_autotune_log(make_log), tune)
    base = copy.deepcopy(tune_doc)
    for entry in base['maps']:
        if entry['id'] == 'base_spark_map_index':
            entry['data'] = ['0.2, 0.6, 1.0, 1.4']
        elif entry['id'] == 'fuel_base':
            entry['data'] = ['20.0, 20.0, 20.0, 20.0'] * 6
    assert 'do not match' in download_tune(result, tune, base_doc=base)['error']


def test_download_requires_a_result(tune):
    assert 'Run the autotune analysis' in download_tune(None, tune)['error']


def test_missing_maf_voltage_column(make_log, tune):
    log = _autotune_log(make_log).drop(columns=['Mass Air Flow Voltage (V)'])
    result = run_autotune_analysis(log, tune)
    assert result['status'] == 'Failure'
    assert 'maf_voltage' in result['error']


def test_tune_is_required(make_log):
    result = run_autotune_analysis(_autotune_log(make_log), None)
    assert result['status'] == 'Failure'
    assert 'load a tune file' in result['error']
