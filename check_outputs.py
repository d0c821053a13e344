#!/usr/bin/env python3

# ============================================================================
# OUTPUT COMPLETENESS REPORT
#
# Tabulates, per subject/session of a QSM output tree, which results exist:
# Chimaps per acquisition, SynthStrip masks and the coreg_toPDw mean Chimap.
# Incomplete units are listed so they can be resubmitted.
#
# Usage:
#   python check_outputs.py /data/qsm_out [--acqs T1w,PDw,MTw] [--out report.csv]
#
# Version: 1.0
# Last updated: 10/16/26
# ============================================================================

import os
import sys
import glob as globmod

import pandas as pd

from qsm_utils import (
    PipelineError,
    PipelineArgumentParser,
    comma_list,
    setup_logging,
    load_pipeline_config,
    iter_session_dirs,
    match_acquisition_files,
    IMAGE_EXTENSIONS,
)


def _count_suffix(directory, suffix):
    n = 0
    for ext in IMAGE_EXTENSIONS:
        n += len(globmod.glob(os.path.join(directory, f"*{suffix}{ext}")))
    return n


def build_report(output_dir, acqs):
    """
    One row per subject/session with output counts and a 'complete' flag.

    A unit is complete when it has at least one Chimap for every acquisition
    in acqs.

    Returns
    -------
    pandas.DataFrame
        Indexed by (subject, session).
    """
    rows = []
    for subject, session, session_dir in iter_session_dirs(output_dir):
        anat_dir = os.path.join(session_dir, "anat")
        row = {"subject": subject, "session": session or ""}
        for acq in acqs:
            row[f"chimap_{acq}"] = len(
                match_acquisition_files(anat_dir, acq, role="chimap", subject=subject)
            )
        row["synthstrip_masks"] = _count_suffix(anat_dir, "_mask")
        row["coreg_mean"] = _count_suffix(os.path.join(anat_dir, "coreg_toPDw"), "_mean_Chimap") > 0
        rows.append(row)

    columns = ["subject", "session"] + [f"chimap_{a}" for a in acqs] + ["synthstrip_masks", "coreg_mean"]
    df = pd.DataFrame(rows, columns=columns)
    chimap_cols = [f"chimap_{a}" for a in acqs]
    df["complete"] = (df[chimap_cols] > 0).all(axis=1).astype(bool)
    return df.set_index(["subject", "session"])


def main(argv=None):
    parser = PipelineArgumentParser(
        description="Report which QSM outputs exist for each subject/session.",
    )
    parser.add_argument("output_dir", help="QSM output tree (sub-*/ses-*/anat).")
    parser.add_argument("--config", default=None,
                        help="Path to the pipeline YAML config (default: built-in defaults).")
    parser.add_argument("--acqs", type=comma_list, default=None,
                        help="Acquisitions to require (default: qsmxt.acqs from config).")
    parser.add_argument("--out", default=None,
                        help="Optional path to write the report as CSV.")
    args = parser.parse_args(argv)

    logger = setup_logging("check_outputs")

    try:
        if not os.path.isdir(args.output_dir):
            raise PipelineError(f"Output directory '{args.output_dir}' does not exist.")
        config = load_pipeline_config(args.config, logger)
    except PipelineError as e:
        logger.error("Fatal: %s", e)
        sys.exit(1)

    acqs = args.acqs or [a[len("acq-"):] if a.startswith("acq-") else a for a in config["qsmxt"]["acqs"]]
    df = build_report(args.output_dir, acqs)

    if df.empty:
        print(f"No sub-* directories found in {args.output_dir}", flush=True)
    else:
        print(df.to_string(), flush=True)

    n_complete = int(df["complete"].sum()) if len(df) else 0
    print(f"\n{n_complete}/{len(df)} complete sessions", flush=True)

    incomplete = df[~df["complete"]] if len(df) else df
    if len(incomplete):
        print("Incomplete:", flush=True)
        for subject, session in incomplete.index:
            print(f"  {subject} {session}".rstrip(), flush=True)

    if args.out:
        os.makedirs(os.path.dirname(os.path.abspath(args.out)), exist_ok=True)
        df.to_csv(args.out)
        print(f"Report CSV written: {args.out}", flush=True)


if __name__ == "__main__":
    main()
