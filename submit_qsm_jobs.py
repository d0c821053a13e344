#!/usr/bin/env python3

# ============================================================================
# SLURM BATCH SUBMITTER FOR THE QSM PIPELINE
#
# Discovers subject/session work units in a BIDS tree and submits one SLURM
# job per unit, each running run_qsm_job.py inside its allocation. Jobs can
# run in parallel or be chained (--seq) so each waits for the previous one
# (afterany, so one failure does not block the rest of the chain).
#
# The coreg step walks a QSM output tree, submits one SPM coregistration job
# per T1w/MTw Chimap and a dependent averaging job (afterok on all of them).
#
# Usage:
#   python submit_qsm_jobs.py [--config qsm.yaml] [--dry-run] \
#     qsmxt [--seq] /data/bids /data/qsm_out sub-001 sub-002
#   python submit_qsm_jobs.py synthstrip --acqs PDw,T1w --holefill 2 \
#     /data/bids /data/synthstrip_out sub-001
#   python submit_qsm_jobs.py coreg /data/qsm_out
#
# A summary CSV of all submissions is written at the end.
#
# Exit codes:
#   0 - every planned job was submitted
#   1 - invalid input, nothing to submit, or at least one submission failed
#
# Version: 1.0
# Last updated: 10/16/26
# ============================================================================

import os
import sys
import csv
import time
import argparse
from datetime import datetime

from qsm_utils import (
    PipelineError,
    SubmissionError,
    MODE_PARALLEL,
    MODE_SEQUENTIAL,
    PipelineArgumentParser,
    comma_list,
    positive_int,
    setup_logging,
    load_pipeline_config,
    resolve_log_dir,
    build_work_units,
    iter_session_dirs,
    match_acquisition_files,
    coreg_output_path,
    submit_job,
    submit_work_units,
    write_command_record,
)

# ---------------------------------------------------------------------------
# Module-level path resolution (validated before anything is submitted)
# ---------------------------------------------------------------------------
_THIS_DIR = os.path.dirname(os.path.abspath(__file__))
_JOB_SCRIPT = os.path.join(_THIS_DIR, "run_qsm_job.py")

COREG_REFERENCE_ACQ = "PDw"
COREG_MOVING_ACQS = ("T1w", "MTw")

SUMMARY_FIELDS = ["unit", "step", "job_id", "dependency", "status", "error_message"]


# ============================================================================
# Job commands
# ============================================================================

def job_command(config, config_path, step, step_args):
    """Command line a SLURM job runs: run_qsm_job.py <step> ..."""
    python = config["slurm"].get("python") or sys.executable
    cmd = [python, _JOB_SCRIPT]
    if config_path:
        cmd += ["--config", os.path.abspath(config_path)]
    return cmd + [step] + list(step_args)


def _summary_row(unit_label, step, handle=None, error=None, dry_run=False):
    if handle is None:
        return {
            "unit": unit_label, "step": step, "job_id": "", "dependency": "",
            "status": "failed", "error_message": error or "",
        }
    dependency = ""
    if handle.depends_on:
        dependency = f"{handle.dependency_type}:" + ":".join(h.job_id for h in handle.depends_on)
    return {
        "unit": unit_label,
        "step": step,
        "job_id": handle.job_id,
        "dependency": dependency,
        "status": "dry-run" if dry_run else "submitted",
        "error_message": "",
    }


# ============================================================================
# Per-unit steps (QSMxT, SynthStrip)
# ============================================================================

def submit_unit_jobs(step, config, config_path, units, sequential, log_dir, logger,
                     dry_run=False):
    """
    Submit a run_qsm_job.py job for each work unit.

    Returns
    -------
    list of dict
        Summary rows, one per unit.
    """
    mode = MODE_SEQUENTIAL if sequential else MODE_PARALLEL
    logger.info("Submitting %d %s job(s) in %s mode", len(units), step, mode)

    def build_command(unit):
        step_args = [unit.input_dir, unit.output_dir, unit.subject]
        if unit.session:
            step_args += ["--session", unit.session]
        if step == "synthstrip":
            step_args += ["--acqs", ",".join(unit.acquisition_types)]
            if unit.options.get("no_csf"):
                step_args.append("--no-csf")
            if unit.options.get("holefill"):
                step_args += ["--holefill", str(unit.options["holefill"])]
        return job_command(config, config_path, step, step_args)

    submitted, failed_units = submit_work_units(
        units, step, mode, build_command,
        config["jobs"][step], config["slurm"], log_dir, logger,
        dry_run=dry_run,
    )

    rows = [_summary_row(unit.label, step, handle, dry_run=dry_run) for unit, handle in submitted]
    rows += [_summary_row(unit.label, step, error=err) for unit, err in failed_units]
    return rows


# ============================================================================
# Coregistration fan-out / averaging fan-in
# ============================================================================

def _find_chimaps(directory, subject, acq, logger):
    matches = match_acquisition_files(directory, acq, role="chimap", subject=subject)
    if len(matches) > 1:
        logger.warning(
            "Multiple %s Chimaps in %s: %s",
            acq, directory, ", ".join(os.path.basename(m) for m in matches)
        )
    return matches


def submit_coreg_jobs(config, config_path, input_dir, log_dir, logger, dry_run=False):
    """
    Submit coregistration and averaging jobs for every session in input_dir.

    Expects Chimaps in sub-*/ses-*/anat/transform_to_orig. For each session
    every T1w and MTw Chimap is coregistered to the PDw Chimap into
    anat/coreg_toPDw. An averaging job over all coregistered maps follows
    with afterok on every coregistration job, and only if each moving
    acquisition was found and all of its jobs were submitted.

    Returns
    -------
    tuple of (list of dict, dict)
        Summary rows and counters.
    """
    rows = []
    counts = {"sessions": 0, "coreg_jobs": 0, "avg_jobs": 0, "skipped": 0}
    jobs = config["jobs"]

    for subject, session, session_dir in iter_session_dirs(input_dir):
        label = f"{subject}_{session}" if session else subject
        counts["sessions"] += 1
        logger.info("Processing: %s", label)

        transform_dir = os.path.join(session_dir, "anat", "transform_to_orig")
        if not os.path.isdir(transform_dir):
            logger.warning("transform_to_orig directory not found: %s", transform_dir)
            continue

        references = _find_chimaps(transform_dir, subject, COREG_REFERENCE_ACQ, logger)
        if not references:
            logger.warning("%s Chimap not found in %s", COREG_REFERENCE_ACQ, transform_dir)
            continue
        reference = references[0]
        logger.info("  %s reference: %s", COREG_REFERENCE_ACQ, os.path.basename(reference))

        coreg_dir = os.path.join(session_dir, "anat", "coreg_toPDw")
        if not dry_run:
            os.makedirs(coreg_dir, exist_ok=True)

        coreg_handles = []
        coreg_outputs = []
        complete = True
        for acq in COREG_MOVING_ACQS:
            movings = _find_chimaps(transform_dir, subject, acq, logger)
            if not movings:
                logger.warning("  %s Chimap not found, skipping", acq)
                counts["skipped"] += 1
                complete = False
                continue

            for i, moving in enumerate(movings, start=1):
                job_name = f"coreg_{acq}_{label}"
                if len(movings) > 1:
                    job_name += f"_{i}"
                cmd = job_command(config, config_path, "coreg", [moving, reference, coreg_dir])
                try:
                    handle = submit_job(
                        cmd, job_name, jobs["coreg"], config["slurm"], log_dir, logger,
                        dry_run=dry_run,
                    )
                except SubmissionError as e:
                    logger.error("  Failed to submit %s coregistration job: %s", acq, e)
                    rows.append(_summary_row(label, f"coreg_{acq}", error=str(e)))
                    complete = False
                    continue

                counts["coreg_jobs"] += 1
                coreg_handles.append(handle)
                coreg_outputs.append(coreg_output_path(moving, coreg_dir))
                rows.append(_summary_row(label, f"coreg_{acq}", handle, dry_run=dry_run))

        if not complete:
            logger.info("  Skipping averaging job (not all coregistration jobs were submitted)")
            continue

        cmd = job_command(
            config, config_path, "average", [reference] + coreg_outputs + [coreg_dir]
        )
        try:
            handle = submit_job(
                cmd, f"average_{label}", jobs["average"], config["slurm"], log_dir, logger,
                dependencies=coreg_handles, dependency_type="afterok", dry_run=dry_run,
            )
        except SubmissionError as e:
            logger.error("  Failed to submit averaging job: %s", e)
            rows.append(_summary_row(label, "average", error=str(e)))
            continue
        counts["avg_jobs"] += 1
        rows.append(_summary_row(label, "average", handle, dry_run=dry_run))

    return rows, counts


# ============================================================================
# Summary CSV
# ============================================================================

def _write_summary_csv(summary_rows, summary_file):
    """Write summary_rows to a CSV file."""
    os.makedirs(os.path.dirname(os.path.abspath(summary_file)), exist_ok=True)
    with open(summary_file, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=SUMMARY_FIELDS)
        writer.writeheader()
        writer.writerows(summary_rows)
    print(f"Summary CSV written: {summary_file}", flush=True)


# ============================================================================
# Main
# ============================================================================

def build_parser():
    parser = PipelineArgumentParser(
        description="Submit QSM pipeline jobs to SLURM.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # QSMxT for two subjects, all sessions in parallel
  python submit_qsm_jobs.py qsmxt /data/bids /data/qsm_out sub-001 sub-002

  # Same, but chained so only one QSMxT job runs at a time
  python submit_qsm_jobs.py qsmxt --seq /data/bids /data/qsm_out sub-001 sub-002

  # SynthStrip on PDw and T1w with 2 hole-filling iterations, dry run
  python submit_qsm_jobs.py --dry-run synthstrip --acqs PDw,T1w --holefill 2 \\
    /data/bids /data/synthstrip_out sub-001

  # Coregister T1w/MTw Chimaps to PDw and average them
  python submit_qsm_jobs.py coreg /data/qsm_out
        """,
    )
    parser.add_argument(
        "--config", default=None,
        help="Path to the pipeline YAML config (default: built-in defaults).",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Print the sbatch calls without submitting anything.",
    )
    parser.add_argument(
        "--summary-file", default=None,
        help=(
            "Path to the output summary CSV. "
            "Defaults to {log_dir}/submit_summary_{YYYYMMDD_HHMMSS}.csv"
        ),
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging.",
    )
    sub = parser.add_subparsers(dest="step", required=True)

    p = sub.add_parser("qsmxt", help="One QSMxT job per subject/session.")
    p.add_argument("--seq", action="store_true",
                   help="Chain jobs so each waits for the previous one (afterany).")
    p.add_argument("input_dir")
    p.add_argument("output_dir")
    p.add_argument("subjects", nargs="+", metavar="SUBJECT")

    p = sub.add_parser("synthstrip", help="One SynthStrip job per subject/session.")
    p.add_argument("--acqs", type=comma_list, default=None,
                   help="Comma-separated acquisitions (default from config: PDw,T1w,MTw).")
    p.add_argument("--no-csf", action="store_true",
                   help="Exclude CSF from the brain border.")
    p.add_argument("--holefill", type=positive_int, default=None,
                   help="Fill mask holes with N dilations followed by N erosions.")
    p.add_argument("--seq", action="store_true",
                   help="Chain jobs so each waits for the previous one (afterany).")
    p.add_argument("input_dir")
    p.add_argument("output_dir")
    p.add_argument("subjects", nargs="+", metavar="SUBJECT")

    p = sub.add_parser("coreg", help="Coregister Chimaps to PDw and average them.")
    p.add_argument("input_dir")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    argv_record = [sys.argv[0]] + (list(argv) if argv is not None else sys.argv[1:])

    logger = setup_logging("submit_qsm_jobs", verbose=args.verbose)
    start_time = time.time()

    # ------------------------------------------------------------------
    # Pre-flight checks
    # ------------------------------------------------------------------
    if not os.path.isfile(_JOB_SCRIPT):
        print(f"ERROR: run_qsm_job.py not found: {_JOB_SCRIPT}", file=sys.stderr)
        sys.exit(1)

    if not os.path.isdir(args.input_dir):
        print(f"ERROR: Input directory '{args.input_dir}' does not exist.", file=sys.stderr)
        sys.exit(1)

    try:
        config = load_pipeline_config(args.config, logger)
    except PipelineError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    output_dir = getattr(args, "output_dir", None) or args.input_dir
    os.makedirs(output_dir, exist_ok=True)
    log_dir = resolve_log_dir(config, output_dir)

    if args.summary_file is None:
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        args.summary_file = os.path.join(log_dir, f"submit_summary_{ts}.csv")

    print(f"Step            : {args.step}", flush=True)
    print(f"Input dir       : {args.input_dir}", flush=True)
    if args.step != "coreg":
        print(f"Output dir      : {output_dir}", flush=True)
        print(f"Subjects        : {len(args.subjects)}", flush=True)
        print(f"Mode            : {MODE_SEQUENTIAL if args.seq else MODE_PARALLEL}", flush=True)
    print(f"Config          : {args.config or '(built-in defaults)'}", flush=True)
    print(f"SLURM log dir   : {log_dir}", flush=True)
    print(f"Summary         : {args.summary_file}", flush=True)
    if args.dry_run:
        print("Submission      : DRY RUN", flush=True)

    # ------------------------------------------------------------------
    # Discovery and submission
    # ------------------------------------------------------------------
    session_prefix = config["bids"]["session_prefix"]

    if args.step == "coreg":
        summary_rows, counts = submit_coreg_jobs(
            config, args.config, args.input_dir, log_dir, logger, dry_run=args.dry_run
        )
        logger.info("=" * 60)
        logger.info("Job Submission Summary")
        logger.info("Total sessions processed: %d", counts["sessions"])
        logger.info("Total coregistration jobs submitted: %d", counts["coreg_jobs"])
        logger.info("Total averaging jobs submitted: %d", counts["avg_jobs"])
        logger.info("Total skipped: %d", counts["skipped"])
        logger.info("=" * 60)
        n_submitted = counts["coreg_jobs"]
    else:
        if args.step == "qsmxt":
            acqs = config["qsmxt"]["acqs"]
            options = {}
        else:
            acqs = args.acqs or config["synthstrip"]["acqs"]
            options = {"no_csf": args.no_csf, "holefill": args.holefill}
            write_command_record(
                output_dir, "synthstrip_command.txt", argv_record,
                {
                    "Input directory": os.path.abspath(args.input_dir),
                    "Output directory": os.path.abspath(output_dir),
                    "Subjects": args.subjects,
                    "Acquisitions": acqs,
                    "No CSF": args.no_csf,
                    "Hole-fill iterations": args.holefill or "disabled",
                    "Sequential": args.seq,
                },
                logger,
            )

        units = build_work_units(
            args.input_dir, output_dir, args.subjects, acqs, logger,
            options=options, session_prefix=session_prefix,
        )
        if not units:
            print("ERROR: No valid sessions found for any subject.", file=sys.stderr)
            sys.exit(1)

        summary_rows = submit_unit_jobs(
            args.step, config, args.config, units, args.seq, log_dir, logger,
            dry_run=args.dry_run,
        )
        n_submitted = sum(1 for r in summary_rows if r["status"] != "failed")

    n_failed = sum(1 for r in summary_rows if r["status"] == "failed")
    _write_summary_csv(summary_rows, args.summary_file)

    print(f"Jobs submitted  : {n_submitted}", flush=True)
    print(f"Jobs failed     : {n_failed}", flush=True)
    print("Monitor jobs with: squeue -u $USER", flush=True)
    logger.info("Total runtime: %.2f seconds", time.time() - start_time)

    if n_submitted == 0:
        print("WARNING: No jobs were submitted.", file=sys.stderr)
        sys.exit(1)
    if n_failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
