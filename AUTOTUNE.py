"""
Autotune (AUTOTUNE) Fuel Base and MAF Scale Module

This module contains pure, non-UI functions to analyze engine logs and recommend
adjustments to the 2D fuel_base table and the 1D maf_scale table.

Each sample is classified as open loop (PE enable thresholds met) or closed
loop. Open-loop samples contribute the lambda ratio measured/target, closed-loop
samples contribute the combined STFT + LTFT correction. Samples are binned to
their fuel_base cell and MAF voltage cell and weighted by how close they sit to
the cell center.
"""

import numpy as np
import pandas as pd

from column_mapper import ColumnResolver
from tuning_loader import TuningData
from utils import axis_indices, axis_weight

REQUIRED_KEYS = ['rpm', 'load', 'afr', 'afr_target', 'stft', 'ltft', 'throttle', 'maf_voltage']


# --- Helper Functions ---

def _failure(message):
    return {'status': 'Failure', 'error': message}


def _finite_or_zero(value):
    value = float(value)
    return value if np.isfinite(value) else 0.0


def _axis_weights(values, indices, axis):
    """Per-sample triangular weights along one axis."""
    return np.array([axis_weight(v, int(i), axis) for v, i in zip(values, indices)], dtype=float)


def _validate_tune(tune):
    """Returns (tables, None) or (None, error message)."""
    rpm_axis = tune.get_array('base_spark_rpm_index')
    load_axis = tune.get_array('base_spark_map_index')
    fuel_base = tune.get_table('fuel_base')
    pe_load = tune.get_array('pe_enable_load')
    pe_tps = tune.get_array('pe_enable_tps')
    maf_scale = tune.get_array('maf_scale')

    if rpm_axis is None or load_axis is None or fuel_base is None or not rpm_axis.size or not load_axis.size:
        return None, 'Tune file is missing required base spark/fuel tables.'
    if fuel_base.shape != (len(rpm_axis), len(load_axis)):
        return None, 'fuel_base table dimensions do not match RPM/Load axes.'
    if pe_load is None or pe_tps is None or len(pe_load) != len(rpm_axis) or len(pe_tps) != len(rpm_axis):
        return None, 'PE enable tables do not match RPM axis length.'
    if maf_scale is None or not maf_scale.size:
        return None, 'Tune file is missing the maf_scale table.'

    maf_axis = tune.get_maf_voltage_axis(len(maf_scale))
    if not len(maf_axis):
        return None, 'Unable to determine MAF voltage axis from tune file.'
    if len(maf_axis) != len(maf_scale):
        return None, 'MAF voltage axis length does not match maf_scale table length.'

    return {
        'rpm_axis': rpm_axis,
        'load_axis': load_axis,
        'fuel_base': fuel_base,
        'pe_load': pe_load,
        'pe_tps': pe_tps,
        'maf_scale': maf_scale,
        'maf_axis': np.asarray(maf_axis, dtype=float),
    }, None


def _prepare_samples(log, resolver, tables, counters):
    """
    Builds one row per usable sample with its cell indices, loop state, weights
    and the metric to accumulate (lambda ratio when open, combined trim when closed).
    """
    frame = pd.DataFrame({key: resolver.raw(log, key) for key in REQUIRED_KEYS}).reset_index(drop=True)

    required = frame[['rpm', 'load', 'afr', 'afr_target']].to_numpy(dtype=float)
    valid = np.isfinite(required).all(axis=1)
    counters['skipped_rows'] += int((~valid).sum())
    data = frame[valid].reset_index(drop=True)

    rpm_axis, load_axis, maf_axis = tables['rpm_axis'], tables['load_axis'], tables['maf_axis']
    data['rpm_idx'] = axis_indices(data['rpm'].to_numpy(), rpm_axis)
    data['load_idx'] = axis_indices(data['load'].to_numpy(), load_axis)

    maf_valid = np.isfinite(data['maf_voltage'].to_numpy(dtype=float))
    data['maf_idx'] = -1
    data.loc[maf_valid, 'maf_idx'] = axis_indices(data.loc[maf_valid, 'maf_voltage'].to_numpy(), maf_axis)
    counters['rows_missing_maf_voltage'] += int((~maf_valid).sum())

    # Coverage counts include every valid sample, whatever its loop state or weight.
    np.add.at(counters['hit_counts'], (data['rpm_idx'].to_numpy(), data['load_idx'].to_numpy()), 1)
    maf_hits = data.loc[maf_valid, 'maf_idx'].to_numpy(dtype=int)
    np.add.at(counters['maf_hit_counts'], maf_hits, 1)

    rpm_idx = data['rpm_idx'].to_numpy()
    with np.errstate(invalid='ignore'):
        is_open = ((data['load'].to_numpy() >= tables['pe_load'][rpm_idx]) &
                   (data['throttle'].to_numpy() >= tables['pe_tps'][rpm_idx]))
    data['is_open'] = is_open

    bad_lambda = is_open & ((data['afr_target'] <= 0) | (data['afr'] <= 0)).to_numpy()
    counters['skipped_rows'] += int(bad_lambda.sum())
    data = data[~bad_lambda].reset_index(drop=True)

    trims = data['stft'].fillna(0.0) + data['ltft'].fillna(0.0)
    data['metric'] = np.where(data['is_open'], data['afr'] / data['afr_target'], trims)

    data['cell_weight'] = (_axis_weights(data['rpm'], data['rpm_idx'], rpm_axis) *
                           _axis_weights(data['load'], data['load_idx'], load_axis))
    data['maf_weight'] = np.nan
    has_maf = data['maf_idx'] >= 0
    data.loc[has_maf, 'maf_weight'] = _axis_weights(data.loc[has_maf, 'maf_voltage'],
                                                    data.loc[has_maf, 'maf_idx'], maf_axis)
    return data


def _accumulate(data, keys, weight_col, min_hit_weight):
    """
    Weighted per-cell accumulation for open and closed loop.
    Returns ({cell: totals} open, {cell: totals} closed, filtered count).
    """
    passing = data[weight_col] >= min_hit_weight
    filtered = int((~passing).sum())
    kept = data[passing].copy()
    kept['weighted'] = kept['metric'] * kept[weight_col]

    bins = {True: {}, False: {}}
    if not kept.empty:
        grouped = kept.groupby(['is_open'] + keys).agg(
            samples=(weight_col, 'size'),
            total_weight=(weight_col, 'sum'),
            weighted_sum=('weighted', 'sum'),
        )
        for index, row in grouped.iterrows():
            is_open, cell = bool(index[0]), tuple(int(i) for i in index[1:])
            bins[is_open][cell] = {
                'samples': int(row['samples']),
                'total_weight': float(row['total_weight']),
                'weighted_sum': float(row['weighted_sum']),
            }
    return bins[True], bins[False], filtered


def _open_stats(entry):
    ratio = entry['weighted_sum'] / entry['total_weight'] if entry['total_weight'] > 0 else 1.0
    return ratio, entry['total_weight'] / entry['samples'] if entry['samples'] else 0.0


def _closed_stats(entry):
    trim = entry['weighted_sum'] / entry['total_weight'] if entry['total_weight'] > 0 else 0.0
    return trim, entry['total_weight'] / entry['samples'] if entry['samples'] else 0.0


def _fuel_summaries(open_bins, closed_bins, tables, min_samples):
    rpm_axis, load_axis, fuel_base = tables['rpm_axis'], tables['load_axis'], tables['fuel_base']

    open_summary = []
    for (r, l), entry in open_bins.items():
        if entry['samples'] < min_samples:
            continue
        ratio, avg_weight = _open_stats(entry)
        current = _finite_or_zero(fuel_base[r, l])
        open_summary.append({
            'rpm_idx': r, 'load_idx': l,
            'rpm': float(rpm_axis[r]), 'load': float(load_axis[l]),
            'samples': entry['samples'], 'avg_weight': avg_weight,
            'mean_ratio': ratio, 'mean_error_pct': (ratio - 1) * 100,
            'current_fuel_base': current, 'suggested_fuel_base': current * ratio,
        })
    open_summary.sort(key=lambda row: -abs(row['mean_error_pct']))

    closed_summary = []
    for (r, l), entry in closed_bins.items():
        if entry['samples'] < min_samples:
            continue
        trim, avg_weight = _closed_stats(entry)
        current = _finite_or_zero(fuel_base[r, l])
        closed_summary.append({
            'rpm_idx': r, 'load_idx': l,
            'rpm': float(rpm_axis[r]), 'load': float(load_axis[l]),
            'samples': entry['samples'], 'avg_weight': avg_weight,
            'mean_trim': trim,
            'current_fuel_base': current, 'suggested_fuel_base': current * (1 + trim / 100),
        })
    closed_summary.sort(key=lambda row: -abs(row['mean_trim']))
    return open_summary, closed_summary


def _maf_summaries(open_bins, closed_bins, tables, min_samples):
    maf_axis, maf_scale = tables['maf_axis'], tables['maf_scale']

    open_summary = []
    for (idx,), entry in open_bins.items():
        if entry['samples'] < min_samples:
            continue
        ratio, avg_weight = _open_stats(entry)
        current = _finite_or_zero(maf_scale[idx])
        open_summary.append({
            'idx': idx, 'voltage': float(maf_axis[idx]),
            'samples': entry['samples'], 'avg_weight': avg_weight,
            'mean_ratio': ratio, 'mean_error_pct': (ratio - 1) * 100,
            'current_gs': current, 'suggested_gs': current * ratio,
        })
    open_summary.sort(key=lambda row: -abs(row['mean_error_pct']))

    closed_summary = []
    for (idx,), entry in closed_bins.items():
        if entry['samples'] < min_samples:
            continue
        trim, avg_weight = _closed_stats(entry)
        current = _finite_or_zero(maf_scale[idx])
        closed_summary.append({
            'idx': idx, 'voltage': float(maf_axis[idx]),
            'samples': entry['samples'], 'avg_weight': avg_weight,
            'mean_trim': trim,
            'current_gs': current, 'suggested_gs': current * (1 + trim / 100),
        })
    closed_summary.sort(key=lambda row: -abs(row['mean_trim']))
    return open_summary, closed_summary


def _apply_change_limit(original, suggested, change_limit):
    """
    Clamps `suggested` to +/- change_limit percent of `original`.
    Returns (applied value, change percent, clamped flag).
    """
    change_pct = (suggested - original) / original * 100.0
    if change_limit > 0 and abs(change_pct) > change_limit:
        factor = 1.0 + change_limit / 100.0 if change_pct > 0 else 1.0 - change_limit / 100.0
        return original * factor, change_pct, True
    return suggested, change_pct, False


def _merge_modifications(closed_summary, open_summary, key):
    """Closed-loop rows first; open-loop rows replace them for the same cell."""
    modifications = {}
    for row in closed_summary:
        modifications[key(row)] = dict(row, source='closed')
    for row in open_summary:
        modifications[key(row)] = dict(row, source='open')
    return modifications


def _change_pct(current, suggested):
    return (suggested - current) / current * 100 if current != 0 else 0.0


def _change_tables(open_summary, closed_summary, shape):
    open_table = [[None] * shape[1] for _ in range(shape[0])]
    closed_table = [[None] * shape[1] for _ in range(shape[0])]
    open_hits = np.zeros(shape, dtype=int)
    closed_hits = np.zeros(shape, dtype=int)

    for row in open_summary:
        r, l = row['rpm_idx'], row['load_idx']
        open_table[r][l] = {
            'current': row['current_fuel_base'],
            'suggested': row['suggested_fuel_base'],
            'change_pct': _change_pct(row['current_fuel_base'], row['suggested_fuel_base']),
            'samples': row['samples'],
            'mean_error_pct': row['mean_error_pct'],
        }
        open_hits[r, l] = row['samples']

    for row in closed_summary:
        r, l = row['rpm_idx'], row['load_idx']
        closed_table[r][l] = {
            'current': row['current_fuel_base'],
            'suggested': row['suggested_fuel_base'],
            'change_pct': _change_pct(row['current_fuel_base'], row['suggested_fuel_base']),
            'samples': row['samples'],
            'mean_trim': row['mean_trim'],
        }
        closed_hits[r, l] = row['samples']
    return open_table, closed_table, open_hits, closed_hits


def _suggested_table(fuel_base, new_table, open_table, closed_table):
    rows, cols = fuel_base.shape
    table = []
    for r in range(rows):
        row = []
        for l in range(cols):
            current = float(fuel_base[r, l])
            suggested = float(new_table[r, l])
            change_pct = _change_pct(current, suggested)
            source, samples = None, 0
            if open_table[r][l] is not None:
                source, samples = 'open', open_table[r][l]['samples']
            elif closed_table[r][l] is not None:
                source, samples = 'closed', closed_table[r][l]['samples']
            row.append({
                'current': current,
                'suggested': suggested,
                'change_pct': change_pct,
                'has_change': abs(change_pct) > 0.01,
                'source': source,
                'samples': samples,
            })
        table.append(row)
    return table


def _maf_combined_changes(maf_axis, maf_scale, new_scale, open_summary, closed_summary):
    open_map = {row['idx']: row for row in open_summary}
    closed_map = {row['idx']: row for row in closed_summary}
    changes = []
    for idx, voltage in enumerate(maf_axis):
        current = _finite_or_zero(maf_scale[idx])
        suggested = float(new_scale[idx])
        change_pct = _change_pct(current, suggested)
        source, samples, label, metric = None, 0, None, None
        if idx in open_map:
            source, samples = 'open', open_map[idx]['samples']
            label, metric = 'Lambda Error', open_map[idx]['mean_error_pct']
        elif idx in closed_map:
            source, samples = 'closed', closed_map[idx]['samples']
            label, metric = 'Mean Trim', closed_map[idx]['mean_trim']
        changes.append({
            'idx': idx,
            'voltage': float(voltage),
            'current': current,
            'suggested': suggested,
            'change_pct': change_pct,
            'has_change': abs(change_pct) > 0.01,
            'source': source,
            'samples': samples,
            'metric_label': label,
            'metric_value': metric,
        })
    return changes


def _format_values(values, decimals):
    zero = f"{0:.{decimals}f}"
    return ", ".join(f"{v:.{decimals}f}" if np.isfinite(v) else zero for v in values)


# --- Main Orchestrator Function ---

def run_autotune_analysis(log, tune, min_samples=25, change_limit=5.0, min_hit_weight=0.25, resolver=None):
    """
    Main orchestrator for the autotune process. A pure computational function.

    Args:
        log (pd.DataFrame): The raw log data.
        tune (TuningData): The calibration the log was recorded with.
        min_samples (int): Minimum accumulated samples for a cell to be changed.
        change_limit (float): Maximum change in percent of the original value;
                              0 disables the limit.
        min_hit_weight (float): Minimum cell-centering weight for a sample to be
                                accumulated (0..1).
        resolver (ColumnResolver, optional): Shared column resolver for this log.

    Returns:
        dict: Summaries, change tables, coverage counts and the formatted
              fuel_base and maf_scale rows, or 'status': 'Failure' with 'error'.
    """
    print(" -> Initializing autotune analysis...")
    min_samples = max(1, int(min_samples or 1))
    change_limit = max(0.0, float(change_limit or 0.0))
    min_hit_weight = min(1.0, max(0.0, float(min_hit_weight or 0.0)))

    if tune is None:
        return _failure('Please load a tune file before running autotune.')
    if log is None or log.empty:
        return _failure('No datalog data available. Load a datalog and try again.')

    resolver = resolver or ColumnResolver.for_log(log)
    valid, missing = resolver.check_required(REQUIRED_KEYS)
    if not valid:
        return _failure(f"The datalog is missing required columns: {', '.join(missing)}")

    tables, error = _validate_tune(tune)
    if error:
        return _failure(error)

    fuel_base = tables['fuel_base']
    maf_scale = tables['maf_scale']
    counters = {
        'skipped_rows': 0,
        'rows_missing_maf_voltage': 0,
        'hit_counts': np.zeros(fuel_base.shape, dtype=int),
        'maf_hit_counts': np.zeros(len(maf_scale), dtype=int),
    }

    print(" -> Binning log samples to fuel_base and maf_scale cells...")
    data = _prepare_samples(log, resolver, tables, counters)

    open_bins, closed_bins, filtered = _accumulate(data, ['rpm_idx', 'load_idx'], 'cell_weight', min_hit_weight)
    maf_data = data[data['maf_idx'] >= 0]
    maf_open_bins, maf_closed_bins, maf_filtered = _accumulate(maf_data, ['maf_idx'], 'maf_weight', min_hit_weight)

    open_summary, closed_summary = _fuel_summaries(open_bins, closed_bins, tables, min_samples)
    maf_open_summary, maf_closed_summary = _maf_summaries(maf_open_bins, maf_closed_bins, tables, min_samples)

    print(" -> Applying fuel_base modifications...")
    new_table = fuel_base.copy()
    modifications = _merge_modifications(closed_summary, open_summary, lambda row: (row['rpm_idx'], row['load_idx']))
    clamped = []
    for (r, l), row in modifications.items():
        original = _finite_or_zero(fuel_base[r, l])
        if original == 0:
            continue
        applied, change_pct, was_clamped = _apply_change_limit(original, row['suggested_fuel_base'], change_limit)
        if was_clamped:
            clamped.append({
                'rpm': row['rpm'], 'load': row['load'],
                'original': original, 'suggested': row['suggested_fuel_base'],
                'applied': applied, 'change_pct': change_pct, 'source': row['source'],
            })
        new_table[r, l] = applied

    print(" -> Applying maf_scale modifications...")
    new_scale = maf_scale.copy()
    maf_modifications = _merge_modifications(maf_closed_summary, maf_open_summary, lambda row: row['idx'])
    maf_clamped = []
    for idx, row in maf_modifications.items():
        original = _finite_or_zero(maf_scale[idx])
        if original == 0:
            continue
        applied, change_pct, was_clamped = _apply_change_limit(original, row['suggested_gs'], change_limit)
        if was_clamped:
            maf_clamped.append({
                'voltage': row['voltage'],
                'original': original, 'suggested': row['suggested_gs'],
                'applied': applied, 'change_pct': change_pct, 'source': row['source'],
            })
        new_scale[idx] = applied

    open_table, closed_table, open_hits, closed_hits = _change_tables(open_summary, closed_summary, fuel_base.shape)
    total_open = sum(entry['samples'] for entry in open_bins.values())
    total_closed = sum(entry['samples'] for entry in closed_bins.values())

    print(f" -> Autotune analysis complete. {len(modifications)} fuel_base and "
          f"{len(maf_modifications)} maf_scale cells modified.")
    return {
        'status': 'Success',
        'open_summary': open_summary,
        'closed_summary': closed_summary,
        'modifications_applied': len(modifications),
        'clamped_modifications': clamped,
        'fuel_base_strings': [_format_values(row, 1) for row in new_table],
        'change_limit_percent': change_limit,
        'min_samples': min_samples,
        'min_hit_weight': min_hit_weight,
        'total_open_samples': total_open,
        'total_closed_samples': total_closed,
        'skipped_rows': counters['skipped_rows'],
        'filtered_by_center_weight': filtered,
        'hit_counts': counters['hit_counts'].tolist(),
        'rpm_axis': tables['rpm_axis'].tolist(),
        'load_axis': tables['load_axis'].tolist(),
        'current_fuel_base': fuel_base.tolist(),
        'open_change_table': open_table,
        'closed_change_table': closed_table,
        'open_hit_counts': open_hits.tolist(),
        'closed_hit_counts': closed_hits.tolist(),
        'suggested_table': _suggested_table(fuel_base, new_table, open_table, closed_table),
        'maf_open_summary': maf_open_summary,
        'maf_closed_summary': maf_closed_summary,
        'maf_modifications_applied': len(maf_modifications),
        'maf_clamped_modifications': maf_clamped,
        'maf_scale_strings': [_format_values(new_scale, 2)],
        'maf_voltage_axis': tables['maf_axis'].tolist(),
        'maf_scale': maf_scale.tolist(),
        'maf_suggested_scale': new_scale.tolist(),
        'maf_combined_changes': _maf_combined_changes(tables['maf_axis'], maf_scale, new_scale,
                                                      maf_open_summary, maf_closed_summary),
        'maf_hit_counts': counters['maf_hit_counts'].tolist(),
        'total_maf_open_samples': sum(entry['samples'] for entry in maf_open_bins.values()),
        'total_maf_closed_samples': sum(entry['samples'] for entry in maf_closed_bins.values()),
        'rows_missing_maf_voltage': counters['rows_missing_maf_voltage'],
        'maf_filtered_by_center_weight': maf_filtered,
    }


def _find_map(doc, map_id):
    for entry in doc['maps']:
        if isinstance(entry, dict) and entry.get('id') == map_id:
            return entry
    return None


def download_tune(result, tune, base_doc=None):
    """
    Writes the autotune result into a copy of a tune document.

    The copy is taken from `base_doc` when given, otherwise from the analysis
    tune. A base document must have the same fuel_base, axis and maf_scale
    shapes as the analysis tune. Only the fuel_base and maf_scale map data are
    replaced.

    Returns:
        dict: The modified tune document, or {'error': message}.
    """
    if (not result or not isinstance(result.get('fuel_base_strings'), list)
            or not isinstance(result.get('maf_scale_strings'), list)):
        return {'error': 'Run the autotune analysis before downloading a tune file.'}

    if base_doc is not None:
        try:
            base = TuningData(base_doc)
        except (TypeError, ValueError):
            return {'error': 'Unable to parse base tune file data.'}
        doc = base.get_raw_tune_data_clone()
    elif tune is not None:
        base = None
        doc = tune.get_raw_tune_data_clone()
    else:
        return {'error': 'No tune file loaded. Please load a tune file or specify a base tune file.'}

    fuel_base_map = _find_map(doc, 'fuel_base')
    if fuel_base_map is None:
        return {'error': 'fuel_base map not found in tune file.'}
    maf_scale_map = _find_map(doc, 'maf_scale')
    if maf_scale_map is None:
        return {'error': 'maf_scale map not found in tune file.'}

    if base is not None:
        if tune is None:
            return {'error': 'Analysis tune file must be loaded to validate base tune file compatibility.'}
        rpm_axis = tune.get_array('base_spark_rpm_index')
        load_axis = tune.get_array('base_spark_map_index')
        base_table = base.get_table('fuel_base')
        base_rpm = base.get_array('base_spark_rpm_index')
        base_load = base.get_array('base_spark_map_index')
        base_maf = base.get_array('maf_scale')
        if base_table is None or base_rpm is None or base_load is None:
            return {'error': 'Base tune file is missing required fuel_base table or axis data.'}

        expected_maf = len(result.get('maf_suggested_scale') or [])
        if (rpm_axis is None or load_axis is None
                or base_table.shape != (len(rpm_axis), len(load_axis))
                or len(base_rpm) != len(rpm_axis) or len(base_load) != len(load_axis)
                or base_maf is None or (expected_maf and len(base_maf) != expected_maf)):
            return {'error': 'Base tune file tables or axes do not match the tune file used for analysis. '
                             'Ensure RPM, Load, and MAF calibration structures align.'}

    fuel_base_map['data'] = list(result['fuel_base_strings'])
    maf_scale_map['data'] = list(result['maf_scale_strings'])
    print(" -> Autotuned fuel_base and maf_scale written to tune document.")
    return doc
