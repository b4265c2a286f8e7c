import json

import numpy as np
import pandas as pd
import pytest

from tuning_loader import TuningData, build_default_maf_voltage_axis


def test_maps_are_parsed_into_arrays(tune):
    assert tune.get_array('base_spark_rpm_index').tolist() == [1000, 2000, 3000, 4000, 5000, 6000]
    assert tune.get_table('fuel_base').shape == (6, 5)
    assert tune.get_parameter('knock_rpm_min') == 1000.0
    assert tune.get_array('missing') is None
    assert tune.has_map('maf_scale')


def test_invalid_documents_raise():
    with pytest.raises(TypeError):
        TuningData(['not', 'a', 'dict'])
    with pytest.raises(ValueError):
        TuningData({'name': 'no maps'})


def test_from_json_and_raw_clone(tune_doc):
    tune = TuningData.from_json(json.dumps(tune_doc).encode('utf-8'))
    clone = tune.get_raw_tune_data_clone()
    clone['maps'].clear()
    assert len(tune.get_raw_tune_data_clone()['maps']) == len(tune_doc['maps'])


def test_interpolate_2d_is_bilinear_and_clamped():
    table = np.array([[0.0, 10.0], [20.0, 30.0]])
    x_axis, y_axis = [1000, 2000], [0.0, 1.0]
    assert TuningData.interpolate_2d(table, x_axis, y_axis, 1500, 0.5) == pytest.approx(15.0)
    assert TuningData.interpolate_2d(table, x_axis, y_axis, 500, -1.0) == pytest.approx(0.0)
    assert TuningData.interpolate_2d(table, x_axis, y_axis, 9000, 9.0) == pytest.approx(30.0)
    with pytest.raises(ValueError):
        TuningData.interpolate_2d(table, [1000, 2000, 3000], y_axis, 1500, 0.5)


def test_interpolate_2d_tolerates_repeated_breakpoints():
    table = np.array([[0.0, 10.0], [20.0, 30.0], [20.0, 30.0]])
    x_axis, y_axis = [1000, 2000, 2000], [0.0, 1.0]
    assert TuningData.interpolate_2d(table, x_axis, y_axis, 1500, 0.5) == pytest.approx(15.0)
    assert TuningData.interpolate_2d(table, x_axis, y_axis, 2500, 1.0) == pytest.approx(30.0)

    table = np.array([[0.0, 10.0, 10.0]])
    assert TuningData.interpolate_2d(table, [1000], [0.0, 1.0, 1.0], 1000, 0.25) == pytest.approx(2.5)


def test_pe_target_with_repeated_rpm_breakpoint():
    tune = TuningData({'maps': [
        {'id': 'pe_initial', 'data': ['0.80, 0.80', '0.70, 0.70', '0.70, 0.70']},
        {'id': 'pe_rpm_index', 'data': ['2000, 4000, 4000']},
        {'id': 'pe_load_index', 'data': ['0.5, 1.5']},
    ]})
    assert tune.get_pe_target(3000, 1.0) == pytest.approx(0.75)


def test_pe_mode_predicates(tune):
    assert tune.is_pe_mode_active(3000, 1.3, 50)
    assert not tune.is_pe_mode_active(3000, 1.1, 50)
    assert not tune.is_pe_mode_active(3000, 1.3, 30)
    mask = tune.pe_mode_mask(pd.Series([3000, 3000]), pd.Series([1.3, 1.0]), pd.Series([50, 50]))
    assert mask.tolist() == [True, False]


def test_limits_interpolate_over_rpm(tune):
    assert tune.get_boost_limit(1500) == pytest.approx(210.0)
    assert tune.get_boost_limit(500) == pytest.approx(200.0)
    assert tune.get_load_limit(3000) == pytest.approx(2.0)
    assert tune.get_pe_target(3000, 1.0) == pytest.approx(0.80)
    assert tune.get_boost_error_index() == [20.3, 11.7, 5.3, 2.1]


def test_missing_tables_return_none():
    tune = TuningData({'maps': []})
    assert tune.get_boost_limit(3000) is None
    assert tune.get_load_limit(3000) is None
    assert tune.get_pe_target(3000, 1.0) is None
    assert not tune.is_pe_mode_active(3000, 2.0, 100)
    assert tune.get_knock_parameters()['rpm_min'] is None


def test_maf_voltage_axis_defaults(tune):
    assert tune.get_maf_voltage_axis(6).tolist() == [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]
    assert build_default_maf_voltage_axis(0).tolist() == []
    assert build_default_maf_voltage_axis(1).tolist() == [0.0]
