"""
Calibration (Tune) Loader Module

Parses a tune document into a unified dictionary of NumPy arrays and exposes the
lookups the analyzers and the autotune engine rely on: table and axis access,
bilinear interpolation, scalar parameters, and derived predicates such as
PE-mode activation, the boost limit and the load limit at a given RPM.
"""

import copy
import json
import os

import numpy as np
import pandas as pd
from scipy.interpolate import RegularGridInterpolator

from utils import axis_index, axis_indices

DEFAULT_BOOST_ERROR_INDEX = [20.3, 11.7, 5.3, 2.1]

MAF_VOLTAGE_AXIS_IDS = (
    'maf_voltage',
    'maf_voltage_index',
    'maf_scale_voltage',
    'maf_scale_voltage_index',
)


def _parse_row(row):
    """Converts a single comma-separated row (or list/number) into a list of floats."""
    if isinstance(row, (int, float)):
        return [float(row)]
    if isinstance(row, str):
        values = []
        for token in row.split(','):
            token = token.strip()
            if not token:
                continue
            try:
                values.append(float(token))
            except ValueError:
                values.append(np.nan)
        return values
    if isinstance(row, (list, tuple)):
        values = []
        for item in row:
            try:
                values.append(float(item))
            except (TypeError, ValueError):
                values.append(np.nan)
        return values
    return []


def _parse_map_data(data):
    """
    Converts the 'data' field of a tune map into a NumPy array.

    A single row is returned as a 1D array; multiple rows form a 2D table.
    Ragged rows are padded with NaN so the table keeps a rectangular shape.
    """
    if data is None:
        return None
    if not isinstance(data, (list, tuple)):
        data = [data]

    if data and all(isinstance(item, (int, float)) for item in data):
        return np.asarray(data, dtype=float)

    rows = [_parse_row(row) for row in data]
    rows = [row for row in rows if row]
    if not rows:
        return None
    if len(rows) == 1:
        return np.asarray(rows[0], dtype=float)

    width = max(len(row) for row in rows)
    table = np.full((len(rows), width), np.nan)
    for i, row in enumerate(rows):
        table[i, :len(row)] = row
    return table


class TuningData:
    """
    Read-only accessor over a parsed tune document. Every map is stored in
    `self.maps` as a NumPy array keyed by its id.
    """

    def __init__(self, tune_doc):
        """
        Initializes the loader from an already deserialized tune document.
        """
        if not isinstance(tune_doc, dict):
            raise TypeError("TuningData must be initialized with a tune document (dict).")
        if not isinstance(tune_doc.get('maps'), list):
            raise ValueError("Tune document does not contain a 'maps' list.")

        self._raw_doc = copy.deepcopy(tune_doc)
        self.maps = {}
        for entry in self._raw_doc['maps']:
            if not isinstance(entry, dict) or 'id' not in entry:
                continue
            parsed = _parse_map_data(entry.get('data'))
            if parsed is not None:
                self.maps[entry['id']] = parsed
        print(f"TuningData loader initialized with {len(self.maps)} maps.")

    @classmethod
    def from_json(cls, text):
        """Builds a TuningData object from JSON text or bytes."""
        if isinstance(text, bytes):
            text = text.decode('utf-8')
        return cls(json.loads(text))

    @classmethod
    def from_file(cls, path):
        """Builds a TuningData object from a tune file on disk."""
        print(f"\n--- Loading tune file: {os.path.basename(path)} ---")
        with open(path, 'r', encoding='utf-8') as f:
            return cls(json.load(f))

    # --- Raw Map Access ---

    def has_map(self, name):
        return name in self.maps

    def get_array(self, name):
        """Returns the map flattened to a 1D float array, or None if it is missing."""
        data = self.maps.get(name)
        if data is None:
            return None
        return np.asarray(data, dtype=float).ravel()

    def get_table(self, name):
        """Returns the map as a 2D float array (rows x cols), or None if it is missing."""
        data = self.maps.get(name)
        if data is None:
            return None
        return np.atleast_2d(np.asarray(data, dtype=float))

    def get_parameter(self, name):
        """Returns the first value of a scalar map, or None if unavailable."""
        data = self.get_array(name)
        if data is None or data.size == 0 or not np.isfinite(data[0]):
            return None
        return float(data[0])

    def get_raw_tune_data_clone(self):
        """Returns a deep copy of the original tune document."""
        return copy.deepcopy(self._raw_doc)

    # --- Interpolation ---

    @staticmethod
    def interpolate_2d(table, x_axis, y_axis, x, y):
        """
        Bilinear interpolation of `table` at (x, y). Rows of the table follow
        `x_axis` and columns follow `y_axis`; inputs outside the axes are clamped
        to the nearest edge.
        """
        table = np.atleast_2d(np.asarray(table, dtype=float))
        x_axis = np.asarray(x_axis, dtype=float).ravel()
        y_axis = np.asarray(y_axis, dtype=float).ravel()

        if table.shape != (len(x_axis), len(y_axis)):
            raise ValueError(
                f"Table shape {table.shape} does not match axes ({len(x_axis)}, {len(y_axis)})."
            )
        if len(x_axis) == 0 or len(y_axis) == 0:
            raise ValueError("Interpolation axes must not be empty.")

        # Repeated breakpoints keep their first row/column.
        x_axis, x_keep = np.unique(x_axis, return_index=True)
        y_axis, y_keep = np.unique(y_axis, return_index=True)
        table = table[np.ix_(x_keep, y_keep)]

        x = float(np.clip(x, x_axis[0], x_axis[-1]))
        y = float(np.clip(y, y_axis[0], y_axis[-1]))

        # RegularGridInterpolator needs at least two points per dimension.
        if len(x_axis) == 1:
            return float(np.interp(y, y_axis, table[0])) if len(y_axis) > 1 else float(table[0, 0])
        if len(y_axis) == 1:
            return float(np.interp(x, x_axis, table[:, 0]))

        interpolator = RegularGridInterpolator((x_axis, y_axis), table, method='linear')
        return float(interpolator([[x, y]])[0])

    def _interpolate_1d(self, table_name, axis_names, rpm):
        table = self.get_array(table_name)
        if table is None or table.size == 0:
            return None

        axis = None
        for axis_name in axis_names:
            candidate = self.get_array(axis_name)
            if candidate is not None and len(candidate) == len(table):
                axis = candidate
                break
        if axis is None:
            return None

        return float(np.interp(float(rpm), axis, table))

    # --- Derived Predicates ---

    def _pe_enable_tables(self):
        rpm_axis = self.get_array('base_spark_rpm_index')
        pe_load = self.get_array('pe_enable_load')
        pe_tps = self.get_array('pe_enable_tps')
        if rpm_axis is None or pe_load is None or pe_tps is None:
            return None
        if len(pe_load) != len(rpm_axis) or len(pe_tps) != len(rpm_axis):
            return None
        return rpm_axis, pe_load, pe_tps

    def is_pe_mode_active(self, rpm, load, tps):
        """True when load and throttle meet the PE enable thresholds at this RPM."""
        tables = self._pe_enable_tables()
        if tables is None:
            return False
        rpm_axis, pe_load, pe_tps = tables
        idx = axis_index(rpm, rpm_axis)
        if idx is None or pd.isna(load) or pd.isna(tps):
            return False
        return bool(load >= pe_load[idx] and tps >= pe_tps[idx])

    def pe_mode_mask(self, rpm, load, tps):
        """Vectorized form of is_pe_mode_active over pandas Series."""
        rpm = pd.Series(rpm, dtype=float)
        mask = pd.Series(False, index=rpm.index)
        tables = self._pe_enable_tables()
        if tables is None:
            return mask

        rpm_axis, pe_load, pe_tps = tables
        idx = axis_indices(rpm.to_numpy(), rpm_axis)
        valid = idx >= 0
        load_thr = np.full(len(rpm), np.inf)
        tps_thr = np.full(len(rpm), np.inf)
        load_thr[valid] = pe_load[idx[valid]]
        tps_thr[valid] = pe_tps[idx[valid]]

        load = np.asarray(load, dtype=float)
        tps = np.asarray(tps, dtype=float)
        with np.errstate(invalid='ignore'):
            active = (load >= load_thr) & (tps >= tps_thr)
        return pd.Series(active, index=rpm.index)

    def get_pe_target(self, rpm, load, mode='initial'):
        """
        Returns the expected PE lambda target at (rpm, load), interpolated from
        `pe_initial` (or `pe_safe` when mode == 'safe').
        """
        table = self.get_table('pe_safe' if mode == 'safe' else 'pe_initial')
        if table is None:
            return None

        candidates = [
            ('pe_rpm_index', 'pe_load_index'),
            ('base_spark_rpm_index', 'base_spark_map_index'),
        ]
        for rpm_name, load_name in candidates:
            rpm_axis = self.get_array(rpm_name)
            load_axis = self.get_array(load_name)
            if rpm_axis is None or load_axis is None:
                continue
            if table.shape == (len(rpm_axis), len(load_axis)):
                return self.interpolate_2d(table, rpm_axis, load_axis, rpm, load)
        return None

    def get_boost_limit(self, rpm):
        """Boost limit (kPa) at the given RPM, or None if the tune has no limit table."""
        return self._interpolate_1d('boost_limit', ('boost_limit_rpm_index', 'base_spark_rpm_index'), rpm)

    def get_load_limit(self, rpm):
        """Load limit (g/rev) at the given RPM, or None if the tune has no limit table."""
        return self._interpolate_1d('load_limit', ('load_limit_rpm_index', 'base_spark_rpm_index'), rpm)

    def get_boost_error_index(self):
        """The 4-tier boost error ladder (kPa), falling back to the stock thresholds."""
        ladder = self.get_array('boost_error_index')
        if ladder is None or len(ladder) < 4 or not np.all(np.isfinite(ladder[:4])):
            return list(DEFAULT_BOOST_ERROR_INDEX)
        return [float(v) for v in ladder[:4]]

    def get_knock_parameters(self):
        return {
            'rpm_min': self.get_parameter('knock_rpm_min'),
            'retard_decay': self.get_parameter('knock_retard_decay'),
            'retard_max': self.get_parameter('knock_retard_max'),
            'sensitivity_low_load': self.get_parameter('knock_sensitivity_low_load'),
        }

    def get_maf_voltage_axis(self, expected_length):
        """MAF voltage breakpoints from the tune, or a synthesized 0-5V axis."""
        for axis_id in MAF_VOLTAGE_AXIS_IDS:
            axis = self.get_array(axis_id)
            if axis is not None and axis.size:
                return axis
        return build_default_maf_voltage_axis(expected_length)


def build_default_maf_voltage_axis(length, max_voltage=5.0):
    """Linear 0..max_voltage axis with `length` breakpoints, rounded to 3 decimals."""
    if not length or length < 1:
        return np.array([])
    if length == 1:
        return np.array([0.0])
    return np.round(np.linspace(0.0, max_voltage, length), 3)
