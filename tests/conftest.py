import numpy as np
import pandas as pd
import pytest

from tuning_loader import TuningData

RPM_AXIS = [1000, 2000, 3000, 4000, 5000, 6000]
LOAD_AXIS = [0.2, 0.6, 1.0, 1.4, 1.8]


def _row(values):
    return ", ".join(str(v) for v in values)


def build_tune_doc():
    """Small but complete tune document: 6 RPM x 5 load breakpoints."""
    return {
        'name': 'test tune',
        'maps': [
            {'id': 'base_spark_rpm_index', 'data': [_row(RPM_AXIS)]},
            {'id': 'base_spark_map_index', 'data': [_row(LOAD_AXIS)]},
            {'id': 'fuel_base', 'data': [_row([20.0] * len(LOAD_AXIS)) for _ in RPM_AXIS]},
            {'id': 'pe_enable_load', 'data': [_row([1.2] * len(RPM_AXIS))]},
            {'id': 'pe_enable_tps', 'data': [_row([40.0] * len(RPM_AXIS))]},
            {'id': 'pe_initial', 'data': [_row([0.80] * len(LOAD_AXIS)) for _ in RPM_AXIS]},
            {'id': 'maf_scale', 'data': [_row([0.0, 2.0, 5.0, 10.0, 20.0, 40.0])]},
            {'id': 'boost_limit', 'data': [_row([200, 220, 240, 260, 260, 260])]},
            {'id': 'load_limit', 'data': [_row([1.5, 1.8, 2.0, 2.2, 2.2, 2.2])]},
            {'id': 'knock_rpm_min', 'data': ['1000']},
            {'id': 'iam_init', 'data': ['0.5']},
        ],
    }


@pytest.fixture
def tune_doc():
    return build_tune_doc()


@pytest.fixture
def tune(tune_doc):
    return TuningData(tune_doc)


@pytest.fixture
def make_log():
    """
    Returns a factory building a log DataFrame on a fixed time base.
    Scalar column values are broadcast, arrays are used as given.
    """
    def _make(n, columns, dt=0.01, start=0.0):
        data = {'Time (s)': np.round(start + np.arange(n) * dt, 6)}
        for name, value in columns.items():
            data[name] = np.full(n, value, dtype=float) if np.isscalar(value) else np.asarray(value, dtype=float)
        return pd.DataFrame(data)
    return _make
