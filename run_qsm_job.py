#!/usr/bin/env python3

# ============================================================================
# JOB-SIDE RUNNER FOR THE QSM PIPELINE
#
# Runs inside one SLURM allocation and executes a single work unit:
#   qsmxt      - QSMxT for one subject/session into the Supplementary scratch
#                area, then relocation into the final output tree
#   synthstrip - SynthStrip brain extraction of first-echo magnitude images,
#                with optional mask hole-filling
#   coreg      - SPM12 coregistration of one Chimap to the PDw reference
#   average    - merge and mean of the PDw reference and coregistered Chimaps
#
# Normally launched by submit_qsm_jobs.py through sbatch --wrap:
#   python run_qsm_job.py --config qsm.yaml \
#     qsmxt /data/bids /data/qsm_out sub-001 --session ses-01
#
# Exit codes:
#   0 - unit succeeded
#   1 - tool failure, relocation failure or invalid input
#
# Version: 1.0
# Last updated: 10/16/26
# ============================================================================

import os
import re
import sys
import time
import shutil

from qsm_utils import (
    PipelineError,
    ToolError,
    RelocationError,
    UnitState,
    ResultLocation,
    PipelineArgumentParser,
    comma_list,
    positive_int,
    setup_logging,
    load_pipeline_config,
    split_image_ext,
    match_acquisition_files,
    run_tool,
    detect_gpu,
    fsl_env,
    build_qsmxt_cmd,
    build_synthstrip_cmd,
    build_fslmerge_cmd,
    build_fslmean_cmd,
    build_spm_coreg_cmd,
    spm_result_path,
    coreg_output_path,
    fill_mask_holes,
    sidecar_path,
    write_sidecar,
    scratch_dir_for,
    relocate_results,
    SPM_COREG_OPTIONS,
)

_SUBJ_SES_RE = re.compile(r"sub-[A-Za-z0-9]+_ses-[A-Za-z0-9]+")


# ============================================================================
# QSMxT
# ============================================================================

def run_qsmxt_unit(config, input_dir, output_dir, subject, session, logger):
    """
    Run QSMxT for one unit and relocate its results.

    QSMxT writes into {output_dir}/Supplementary/{subject}[/{session}]. Only
    after a zero exit is {scratch}/{subject}[/{session}] copy-merged into
    {output_dir}/{subject}[/{session}].

    Returns
    -------
    UnitState
        TOOL_FAILED, RELOCATION_FAILED or RELOCATED.
    """
    label = f"{subject}/{session}" if session else subject
    scratch = scratch_dir_for(output_dir, subject, session)
    os.makedirs(scratch, exist_ok=True)

    logger.info("Input directory: %s", input_dir)
    logger.info("Supplementary directory: %s", scratch)

    cmd = build_qsmxt_cmd(
        config["qsmxt"], config["tools"], input_dir, scratch, subject, session
    )
    try:
        run_tool(cmd, logger, description="QSMxT", stream=True)
    except ToolError as e:
        logger.error("QSMxT failed for %s: %s", label, e)
        logger.error("Data remains in supplementary directory: %s", scratch)
        return UnitState.TOOL_FAILED
    logger.info("QSMxT finished for %s (%s)", label, UnitState.TOOL_SUCCEEDED.value)

    parts = [subject] + ([session] if session else [])
    location = ResultLocation(
        scratch_path=os.path.join(scratch, *parts),
        final_path=os.path.join(output_dir, *parts),
    )
    try:
        relocate_results(location, logger)
    except RelocationError as e:
        logger.error("Relocation failed for %s: %s", label, e)
        return UnitState.RELOCATION_FAILED
    return UnitState.RELOCATED


# ============================================================================
# SynthStrip
# ============================================================================

def run_synthstrip_unit(config, input_dir, output_dir, subject, session, acqs,
                        no_csf, holefill, logger):
    """
    Brain-extract every first-echo magnitude image of the requested
    acquisitions.

    Outputs <base>_brain<ext> and <base>_mask<ext> go to
    {output_dir}/{subject}[/{session}]/anat. A failing file is logged and
    skipped; its siblings are still processed.

    Returns
    -------
    dict
        Counts: processed, failed, and the list of acquisitions with no match.
    """
    parts = [subject] + ([session] if session else [])
    anat_dir = os.path.join(input_dir, *parts, "anat")
    out_anat = os.path.join(output_dir, *parts, "anat")
    os.makedirs(out_anat, exist_ok=True)

    tools = config["tools"]
    use_gpu = detect_gpu(tools, logger)

    counts = {"processed": 0, "failed": 0, "missing": []}
    for acq in acqs:
        files = match_acquisition_files(anat_dir, acq, role="magnitude", subject=subject)
        if not files:
            logger.warning("No first-echo magnitude file found for acq-%s in %s", acq, anat_dir)
            counts["missing"].append(acq)
            continue
        if len(files) > 1:
            logger.warning(
                "Multiple files found for acq-%s, processing all: %s",
                acq, ", ".join(os.path.basename(f) for f in files)
            )

        for in_file in files:
            base, ext = split_image_ext(os.path.basename(in_file))
            brain = os.path.join(out_anat, f"{base}_brain{ext}")
            mask = os.path.join(out_anat, f"{base}_mask{ext}")
            logger.info("Processing: %s", os.path.basename(in_file))

            try:
                run_tool(
                    build_synthstrip_cmd(tools, in_file, brain, mask, use_gpu=use_gpu, no_csf=no_csf),
                    logger, description="SynthStrip",
                )
                if holefill:
                    fill_mask_holes(tools, in_file, mask, brain, holefill, logger)
            except ToolError as e:
                logger.error("Failed to process %s: %s", in_file, e)
                counts["failed"] += 1
                continue

            steps = ["SynthStrip brain extraction"]
            if holefill:
                steps.append(f"Mask hole-filling ({holefill} dilations + {holefill} erosions)")
                steps.append("Brain image regenerated with refined mask")
            write_sidecar(
                brain,
                "Brain-extracted first-echo magnitude image",
                {"input_image": in_file, "mask": mask},
                steps,
                {"NoCSF": no_csf, "GPU": use_gpu, "HoleFillIterations": holefill or 0},
                logger,
                software={"SynthStrip": " ".join(tools["synthstrip"])},
            )
            counts["processed"] += 1
            logger.info("Completed: %s", os.path.basename(brain))

    return counts


# ============================================================================
# Coregistration and averaging
# ============================================================================

def run_coreg(config, moving, reference, output_dir, logger):
    """
    Coregister moving to reference with SPM12 and place the result in
    output_dir under the name given by coreg_output_path.

    Returns
    -------
    str
        Final path of the coregistered image.
    """
    for label, path in (("Moving image", moving), ("Reference image", reference)):
        if not os.path.isfile(path):
            raise PipelineError(f"{label} not found: {path}")

    os.makedirs(output_dir, exist_ok=True)
    logger.info("Moving image: %s", moving)
    logger.info("Reference image: %s", reference)
    logger.info("Output directory: %s", output_dir)

    run_tool(
        build_spm_coreg_cmd(config["tools"], moving, reference), logger,
        description="SPM coregister",
    )

    result = spm_result_path(moving)
    if not os.path.isfile(result):
        raise ToolError(f"Coregistered result not found at {result}")

    final = coreg_output_path(moving, output_dir)
    if os.path.abspath(result) != os.path.abspath(final):
        for stale in (final, sidecar_path(final)):
            if os.path.exists(stale):
                logger.info("Removing old version: %s", stale)
                os.remove(stale)
        shutil.move(result, final)
    logger.info("Coregistration completed successfully. Result saved to: %s", final)

    write_sidecar(
        final,
        "Coregistered image aligned to reference space using SPM",
        {"moving_image": moving, "reference_image": reference},
        ["SPM coregistration of moving image to reference space"],
        {
            "CoregistrationMethod": "SPM Coregister (estimate and reslice)",
            "TransformationType": "Rigid body (6 DOF) with image reslicing",
            "Options": SPM_COREG_OPTIONS,
        },
        logger,
        software={"SPM": "SPM12", "MATLAB": " ".join(config["tools"]["matlab"])},
        extra={"Units": "Hz", "QualityCheck": "Visual inspection recommended"},
    )
    return final


def run_average(config, reference, coreg_files, output_dir, logger):
    """
    Merge the reference and coregistered Chimaps along time and take the mean.

    Returns
    -------
    tuple of (str, str)
        (merged_path, mean_path)
    """
    inputs = [reference] + list(coreg_files)
    missing = [p for p in inputs if not os.path.isfile(p)]
    if missing:
        raise PipelineError(f"Input file(s) not found: {', '.join(missing)}")

    os.makedirs(output_dir, exist_ok=True)

    m = _SUBJ_SES_RE.search(os.path.basename(reference))
    if m:
        merged = os.path.join(output_dir, f"{m.group(0)}_merged_Chimap.nii")
        mean = os.path.join(output_dir, f"{m.group(0)}_mean_Chimap.nii")
    else:
        logger.warning("Could not extract subject/session from filename, using generic names")
        merged = os.path.join(output_dir, "merged_Chimap.nii")
        mean = os.path.join(output_dir, "mean_Chimap.nii")

    tools = config["tools"]
    logger.info("Step 1: Merging Chimaps...")
    run_tool(build_fslmerge_cmd(tools, merged, inputs), logger,
             env=fsl_env(merged), description="fslmerge")
    logger.info("Step 2: Computing mean...")
    run_tool(build_fslmean_cmd(tools, merged, mean), logger,
             env=fsl_env(mean), description="fslmaths (mean)")

    write_sidecar(
        mean,
        "Mean of the PDw reference Chimap and the Chimaps coregistered to it",
        {"reference_image": reference, "coregistered_images": list(coreg_files)},
        ["fslmerge -t of all inputs", "fslmaths -Tmean"],
        {"NumberOfInputs": len(inputs)},
        logger,
        software={"FSL": "fslmerge, fslmaths"},
        extra={"Units": "Hz"},
    )
    logger.info("Merged: %s", merged)
    logger.info("Mean: %s", mean)
    return merged, mean


# ============================================================================
# Main
# ============================================================================

def build_parser():
    parser = PipelineArgumentParser(
        description="Run one QSM pipeline work unit inside a SLURM job.",
    )
    parser.add_argument(
        "--config", default=None,
        help="Path to the pipeline YAML config (default: built-in defaults).",
    )
    parser.add_argument(
        "--log-file", default=None,
        help="Optional path to a log file.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging.",
    )
    sub = parser.add_subparsers(dest="step", required=True)

    p = sub.add_parser("qsmxt", help="Run QSMxT for one subject/session.")
    p.add_argument("input_dir")
    p.add_argument("output_dir")
    p.add_argument("subject")
    p.add_argument("--session", default=None)

    p = sub.add_parser("synthstrip", help="Run SynthStrip for one subject/session.")
    p.add_argument("input_dir")
    p.add_argument("output_dir")
    p.add_argument("subject")
    p.add_argument("--session", default=None)
    p.add_argument("--acqs", type=comma_list, required=True,
                   help="Comma-separated acquisitions (e.g. PDw,T1w,MTw).")
    p.add_argument("--no-csf", action="store_true",
                   help="Exclude CSF from the brain border.")
    p.add_argument("--holefill", type=positive_int, default=None,
                   help="Fill mask holes with N dilations followed by N erosions.")

    p = sub.add_parser("coreg", help="Coregister one image to a reference with SPM.")
    p.add_argument("moving")
    p.add_argument("reference")
    p.add_argument("output_dir")

    p = sub.add_parser("average", help="Merge and average reference + coregistered Chimaps.")
    p.add_argument("reference")
    p.add_argument("coreg_files", nargs="+", metavar="COREG")
    p.add_argument("output_dir")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logger = setup_logging("run_qsm_job", log_file=args.log_file, verbose=args.verbose)

    start_time = time.time()
    logger.info("=" * 60)
    logger.info("QSM Pipeline Job: %s", args.step)
    if getattr(args, "subject", None):
        logger.info("Subject: %s", args.subject)
    if getattr(args, "session", None):
        logger.info("Session: %s", args.session)
    logger.info("=" * 60)

    exit_code = 0
    try:
        config = load_pipeline_config(args.config, logger)

        if args.step == "qsmxt":
            if not os.path.isdir(args.input_dir):
                raise PipelineError(f"Input directory '{args.input_dir}' does not exist.")
            state = run_qsmxt_unit(
                config, args.input_dir, args.output_dir, args.subject, args.session, logger
            )
            logger.info("Unit state: %s", state.value)
            if state is not UnitState.RELOCATED:
                exit_code = 1

        elif args.step == "synthstrip":
            if not os.path.isdir(args.input_dir):
                raise PipelineError(f"Input directory '{args.input_dir}' does not exist.")
            counts = run_synthstrip_unit(
                config, args.input_dir, args.output_dir, args.subject, args.session,
                args.acqs, args.no_csf, args.holefill, logger,
            )
            logger.info(
                "SynthStrip summary: %d processed, %d failed, missing acquisitions: %s",
                counts["processed"], counts["failed"], ", ".join(counts["missing"]) or "none"
            )
            if counts["failed"] or counts["processed"] == 0:
                exit_code = 1

        elif args.step == "coreg":
            run_coreg(config, args.moving, args.reference, args.output_dir, logger)

        elif args.step == "average":
            run_average(
                config, args.reference, args.coreg_files,
                args.output_dir, logger,
            )

    except PipelineError as e:
        logger.error("Fatal: %s", e)
        sys.exit(1)

    logger.info("Total runtime: %.2f seconds", time.time() - start_time)
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
