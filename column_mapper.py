"""
Log Column Resolution Module

Datalogging tools disagree on column naming ("Engine Speed (rpm)", "RPM",
"Engine RPM", ...). This module maps logical signal keys onto whatever literal
header a given log uses. A single ColumnResolver is built per header set and
shared by every analyzer so they all agree on which column backs each signal.
"""

import re

import numpy as np
import pandas as pd

COLUMN_ALIASES = {
    'time': ['Time (s)', 'Time', 'Time(s)', 'Timestamp'],
    'rpm': ['Engine Speed (rpm)', 'Engine Speed', 'RPM', 'Engine RPM', 'Engine Speed(rpm)', 'EngineSpeed'],
    'load': ['Load (MAF) (g/rev)', 'Load (g/rev)', 'Load', 'MAF Load', 'Engine Load', 'Calculated Load'],
    'throttle': ['Throttle Position (%)', 'Throttle Position', 'TPS', 'Throttle (%)', 'Accelerator Position'],
    'afr': ['Air/Fuel Sensor #1 (λ)', 'Air/Fuel Sensor #1', 'Air/Fuel Ratio', 'Lambda', 'AFR', 'Wideband O2'],
    'afr_target': ['Power Mode - Fuel Ratio Target (λ)', 'Fuel Ratio Target', 'AFR Target',
                   'Lambda Target', 'Target Lambda', 'Fuel Target'],
    'stft': ['Fuel Trim - Short Term (%)', 'Short Term Fuel Trim', 'STFT', 'Short Term Trim'],
    'ltft': ['Fuel Trim - Long Term (%)', 'Long Term Fuel Trim', 'LTFT', 'Long Term Trim'],
    'knock_retard': ['Knock Retard (°)', 'Knock Retard (deg)', 'Knock Retard', 'Knock Retard (degrees)',
                     'KnockRetard', 'Knock Timing'],
    'actual_boost': ['Manifold Absolute Pressure (kPa)', 'Manifold Air Pressure - Filtered (kPa)',
                     'Manifold Pressure', 'MAP (kPa)', 'MAP', 'Boost Pressure', 'Actual Boost'],
    'boost_target': ['Boost Target (kPa)', 'Boost Target', 'Target Boost', 'Boost Setpoint', 'Desired Boost'],
    'wastegate': ['Wastegate Duty Cycle (%)', 'Wastegate DC', 'WG Duty', 'Wastegate Duty', 'Wastegate'],
    'iam': ['Ignition Advance Multiplier', 'IAM', 'Ignition Multiplier', 'Timing Multiplier'],
    'coolant_temp': ['Coolant Temperature (°C)', 'Coolant Temp', 'ECT', 'Engine Coolant Temperature',
                     'Water Temperature'],
    'intake_temp': ['Intake Air Temperature (°C)', 'Intake Air Temp', 'IAT', 'Air Intake Temperature',
                    'Charge Air Temperature'],
    'maf_voltage': ['Mass Air Flow Voltage (V)', 'MAF Voltage', 'MAF V', 'Mass Air Flow Voltage'],
    'injector_pw': ['Injector Pulse Width (ms)', 'Injector Pulse Width', 'Injector PW', 'Fuel Injector Pulse Width'],
}

# Last-resort keyword sets. A header must contain at least two of them.
COLUMN_KEYWORDS = {
    'rpm': ['engine', 'speed', 'rpm'],
    'load': ['load', 'maf', 'g/rev'],
    'throttle': ['throttle', 'position', 'tps'],
    'afr': ['air/fuel', 'sensor', 'lambda'],
    'afr_target': ['fuel', 'ratio', 'target'],
    'stft': ['short', 'trim', 'stft'],
    'ltft': ['long', 'trim', 'ltft'],
    'knock_retard': ['knock', 'retard'],
    'actual_boost': ['manifold', 'pressure', 'absolute'],
    'boost_target': ['boost', 'target', 'setpoint'],
    'wastegate': ['wastegate', 'duty', 'wg'],
    'iam': ['ignition', 'advance', 'multiplier'],
    'coolant_temp': ['coolant', 'temp', 'ect'],
    'intake_temp': ['intake', 'air', 'temp'],
    'maf_voltage': ['mass', 'flow', 'voltage'],
    'injector_pw': ['injector', 'pulse', 'width'],
}


def normalize_header(header_name):
    """Normalizes a log file header for case-insensitive and unit-agnostic comparison."""
    normalized = re.sub(r'\s*\([^)]*\)\s*$', '', str(header_name))
    return normalized.lower().strip()


def _squash(name):
    """Lowercases and strips punctuation and whitespace used in units."""
    return re.sub(r'[()°%#\-\s]', '', str(name).lower())


def _find_alias_match(aliases, log_headers):
    """Finds a match for a list of aliases within the log headers, strictest rule first."""
    for alias in aliases:
        if alias in log_headers:
            return alias

    for alias in aliases:
        for header in log_headers:
            if str(header).lower() == alias.lower():
                return header

    for alias in aliases:
        target = normalize_header(alias)
        for header in log_headers:
            if normalize_header(header) == target:
                return header

    for alias in aliases:
        squashed = _squash(alias)
        if len(squashed) <= 2:
            continue
        for header in log_headers:
            if squashed in _squash(header):
                return header
    return None


def _find_keyword_match(keywords, log_headers):
    for header in log_headers:
        lowered = str(header).lower()
        if sum(1 for kw in keywords if kw in lowered) >= 2:
            return header
    return None


class ColumnResolver:
    """
    Resolves logical signal keys (e.g. 'actual_boost') to literal log headers.

    Priority: exact name, case-insensitive, unit-agnostic, normalized
    containment, then keyword overlap.
    """

    def __init__(self, columns, aliases=None, keywords=None):
        self.columns = [str(c) for c in columns]
        self.aliases = dict(COLUMN_ALIASES)
        if aliases:
            for key, names in aliases.items():
                self.aliases[key] = list(names) + [n for n in self.aliases.get(key, []) if n not in names]
        self.keywords = dict(COLUMN_KEYWORDS)
        if keywords:
            self.keywords.update(keywords)
        self._cache = {}

    @classmethod
    def for_log(cls, log, aliases=None):
        return cls(list(log.columns), aliases=aliases)

    def resolve(self, key):
        """Literal column name for `key`, or None if the log does not carry it."""
        if key in self._cache:
            return self._cache[key]

        candidates = self.aliases.get(key, [key])
        found = _find_alias_match(candidates, self.columns)
        if found is None and key in self.keywords:
            found = _find_keyword_match(self.keywords[key], self.columns)

        self._cache[key] = found
        return found

    def has(self, key):
        return self.resolve(key) is not None

    def raw(self, log, key):
        """Numeric series for `key` with unparseable values as NaN, or None if absent."""
        column = self.resolve(key)
        if column is None or column not in log.columns:
            return None
        return pd.to_numeric(log[column], errors='coerce').astype(float)

    def numeric(self, log, key, default=0.0):
        """Numeric series for `key` with missing or unparseable values replaced by `default`."""
        series = self.raw(log, key)
        if series is None:
            return pd.Series(np.full(len(log), default, dtype=float), index=log.index)
        return series.fillna(default)

    def check_required(self, keys):
        """Returns (all_present, missing_keys)."""
        missing = [key for key in keys if not self.has(key)]
        return not missing, missing

    def mappings(self, keys=None):
        keys = keys if keys is not None else list(self.aliases)
        return {key: self.resolve(key) for key in keys}
