"""
LogTuner Application

This script serves as the entry point for the LogTuner application. It performs the following steps:
1. Loads one or more datalog CSV files and, optionally, a JSON tune file.
2. Resolves the log's column names once and shares the mapping with every analyzer.
3. Runs the knock, boost, AFR, fuel trim, IAM, load limit and temperature analyses.
4. Compiles all analyzer events into a single list of issues and prints a report.
5. Optionally runs the autotune analysis and writes the modified tune file.
"""

import argparse
import json
import os

import pandas as pd

from AFR import run_afr_analysis
from AUTOTUNE import download_tune, run_autotune_analysis
from column_mapper import ColumnResolver
from IAM import run_iam_analysis
from KNK import run_knock_analysis
from LOAD import run_load_limit_analysis
from log_score import compile_issues, filter_issues, sort_issues, summarize_issues
from TEMP import run_coolant_analysis, run_intake_analysis
from TRIM import run_ltft_analysis, run_stft_analysis
from tuning_loader import TuningData
from WG import run_boost_analysis

# Run order matters: IAM correlates its drops with the knock events.
ANALYSES = [
    ('knock', 'Knock (KNK) Analysis', run_knock_analysis),
    ('boost', 'Boost Control (WG) Analysis', run_boost_analysis),
    ('afr', 'Air/Fuel Ratio (AFR) Analysis', run_afr_analysis),
    ('fueltrim', 'Short Term Fuel Trim Analysis', run_stft_analysis),
    ('longtermfueltrim', 'Long Term Fuel Trim Analysis', run_ltft_analysis),
    ('iam', 'IAM Analysis', run_iam_analysis),
    ('loadlimit', 'Load Limit Analysis', run_load_limit_analysis),
    ('coolanttemp', 'Coolant Temperature Analysis', run_coolant_analysis),
    ('iat', 'Intake Air Temperature Analysis', run_intake_analysis),
]


def load_log_files(log_paths):
    """
    Reads and concatenates datalog CSV files into a single DataFrame.
    Empty trailing columns written by some loggers are dropped.
    """
    log_list = [pd.read_csv(path, encoding='latin1') for path in log_paths]
    log_df = pd.concat(log_list, ignore_index=True)
    unnamed = [c for c in log_df.columns if str(c).startswith('Unnamed')]
    return log_df.drop(columns=unnamed)


def load_tune_file(tune_path):
    """Loads a JSON tune file, or returns None when no path is given."""
    if not tune_path:
        return None
    return TuningData.from_file(tune_path)


class LogTunerSession:
    """
    Holds one log and its tune, runs the analyses against them and caches each
    result under its source id until the next run.
    """

    def __init__(self, log, tune=None, params=None):
        self.log = log
        self.tune = tune
        self.params = params or {}
        self.resolver = ColumnResolver.for_log(log)
        self._results = {}

    def run_analysis(self, source_id):
        """Runs a single analysis and caches its result."""
        for sid, label, func in ANALYSES:
            if sid != source_id:
                continue
            print(f"\n[MODULE] Running {label}...")
            kwargs = {'params': self.params.get(sid)}
            if sid == 'iam':
                kwargs['knock_events'] = self.get_cached_analysis('knock', {}).get('events')
            try:
                result = func(self.log, self.tune, resolver=self.resolver, **kwargs)
            except Exception as e:
                print(f"[ERROR] {label} failed: {e}")
                result = {'status': 'Failure', 'error': str(e), 'warnings': [], 'events': [],
                          'statistics': {}, 'columns': {}}
            else:
                if result['status'] == 'Success':
                    print(f"[OK] {label}: {len(result['events'])} events.")
                else:
                    print(f"[WARN] {label}: {result['error']}")
            self._results[sid] = result
            return result
        raise KeyError(f"Unknown analysis '{source_id}'")

    def run_all(self):
        for source_id, _, _ in ANALYSES:
            self.run_analysis(source_id)
        return dict(self._results)

    def get_cached_analysis(self, source_id, default=None):
        return self._results.get(source_id, default)

    def compile_issues(self, show_short_term_trim=False):
        return compile_issues(self._results, show_short_term_trim=show_short_term_trim)

    def run_autotune(self, min_samples=25, change_limit=5.0, min_hit_weight=0.25):
        print("\n[MODULE] Running Autotune Analysis...")
        result = run_autotune_analysis(self.log, self.tune, min_samples=min_samples,
                                       change_limit=change_limit, min_hit_weight=min_hit_weight,
                                       resolver=self.resolver)
        if result['status'] == 'Success':
            print(f"[OK] Autotune: {result['modifications_applied']} fuel_base and "
                  f"{result['maf_modifications_applied']} maf_scale cells modified.")
        else:
            print(f"[ERROR] Autotune failed: {result['error']}")
        self._results['autotune'] = result
        return result


def print_report(session, issues):
    summary = summarize_issues(issues)
    print("\n--- Log Score ---")
    print(f"Total issues: {summary['total']}  Critical: {summary['critical']}")
    by_source = ', '.join(f"{source}: {count}" for source, count in summary['by_source'].items())
    print(f"By category: {by_source or 'None'}")

    for source_id, label, _ in ANALYSES:
        result = session.get_cached_analysis(source_id)
        if result:
            for warning in result.get('warnings', []):
                print(f"[WARN] {label}: {warning}")

    critical = sort_issues(filter_issues(issues, severity='critical'), [('time', 'asc')])
    if critical:
        print("\nCritical issues:")
        for issue in critical:
            print(f"  {issue['time']:>9.2f}s  {issue['source']:<24} {issue['description']}")


def main(argv=None):
    """
    The main execution function of the application.
    """
    parser = argparse.ArgumentParser(
        description='Analyze ECU datalogs for knock, boost, fueling and temperature issues, '
                    'and optionally autotune fuel_base and maf_scale.')
    parser.add_argument('logs', nargs='+', help='Path(s) to datalog CSV file(s)')
    parser.add_argument('--tune', help='Path to the JSON tune file the logs were recorded with')
    parser.add_argument('--autotune', action='store_true', help='Run the autotune analysis (requires --tune)')
    parser.add_argument('--min-samples', type=int, default=25,
                        help='Minimum samples per cell before a change is suggested (default: 25)')
    parser.add_argument('--change-limit', type=float, default=5.0,
                        help='Maximum change per cell in percent, 0 disables (default: 5.0)')
    parser.add_argument('--min-hit-weight', type=float, default=0.25,
                        help='Minimum cell-centering weight for a sample to count (default: 0.25)')
    parser.add_argument('--show-stft', action='store_true', help='Include short term fuel trim issues')
    parser.add_argument('--output', help='Write the autotuned tune file to this path')
    args = parser.parse_args(argv)

    print("--- LogTuner Started ---")
    print("\n--- Step 1: Loading Files ---")
    try:
        log_df = load_log_files(args.logs)
        tune = load_tune_file(args.tune)
    except (OSError, ValueError, TypeError) as e:
        print(f"[ERROR] Could not load input files: {e}")
        return 1
    print(f"[OK] Loaded {len(args.logs)} log file(s) with {len(log_df)} rows.")

    print("\n--- Step 2: Running Analyses ---")
    session = LogTunerSession(log_df, tune)
    session.run_all()
    issues = session.compile_issues(show_short_term_trim=args.show_stft)
    print_report(session, issues)

    if args.autotune:
        print("\n--- Step 3: Autotune ---")
        result = session.run_autotune(args.min_samples, args.change_limit, args.min_hit_weight)
        if result['status'] != 'Success':
            return 1
        for row in result['clamped_modifications']:
            print(f"  Clamped rpm={row['rpm']:.0f} load={row['load']:.2f}: "
                  f"{row['change_pct']:+.1f}% -> {row['applied']:.1f} ({row['source']} loop)")
        if args.output:
            doc = download_tune(result, tune)
            if 'error' in doc:
                print(f"[ERROR] {doc['error']}")
                return 1
            with open(args.output, 'w', encoding='utf-8') as f:
                json.dump(doc, f, indent=2)
            print(f"[OK] Wrote autotuned tune file: {os.path.basename(args.output)}")

    print("\n--- LogTuner Complete ---")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
