#!/usr/bin/env python3

# ============================================================================
# SPACE TRANSFORMS FOR QSM OUTPUTS
#
# Resamples processed maps with FSL flirt through the header (sform/qform)
# transform only, no registration:
#   orig - every acq-{PDw,MTw,T1w} image in sub-*/ses-*/anat onto the
#          matching first-echo phase MPM input  -> anat/transform_to_orig/
#   mpm  - T1w/MTw Chimaps in anat/transform_to_orig onto the PDw
#          first-echo magnitude MPM_<acq> reference from MPM calculation
#          -> anat/transform_to_mpm/
#
# Runs locally (no SLURM). Each output gets a JSON sidecar recording the
# interpolation used.
#
# Usage:
#   python transform_space.py orig /data/qsm_out /data/bids
#   python transform_space.py mpm /data/qsm_out /data/mpm_out --interp spline
#
# Version: 1.0
# Last updated: 10/16/26
# ============================================================================

import os
import sys
import time

from qsm_utils import (
    PipelineError,
    ToolError,
    PipelineArgumentParser,
    setup_logging,
    load_pipeline_config,
    iter_session_dirs,
    split_image_ext,
    acquisition_of,
    match_acquisition_files,
    run_tool,
    fsl_env,
    build_flirt_cmd,
    write_sidecar,
)

INTERP_MODES = ("trilinear", "nearestneighbour", "sinc", "spline")

# spline interpolation corrupts R2* maps, so the orig target stays trilinear.
DEFAULT_INTERP = {"orig": "trilinear", "mpm": "spline"}

ORIG_ACQS = ("PDw", "MTw", "T1w")
MPM_ACQS = ("T1w", "MTw")
MPM_REFERENCE_ACQ = "PDw"


def _new_counts():
    return {"sessions": 0, "files": 0, "transformed": 0, "skipped": 0, "errors": 0}


def transform_file(tools_cfg, in_file, ref_file, out_file, interp, target, logger):
    """Resample one image onto ref_file and write its provenance sidecar."""
    run_tool(
        build_flirt_cmd(tools_cfg, in_file, ref_file, out_file, interp=interp),
        logger, env=fsl_env(out_file), description="flirt",
    )
    write_sidecar(
        out_file,
        f"Image resampled into {target} space using the header transform",
        {"input_image": in_file, "reference_image": ref_file},
        ["FSL flirt -applyxfm -usesqform"],
        {"TargetSpace": target, "Interpolation": interp},
        logger,
        software={"FSL": "flirt"},
    )


def transform_to_orig(config, input_dir, ref_dir, interp, logger):
    """
    Resample every acq-{PDw,MTw,T1w} image in each session's anat/ onto its
    original first-echo phase MPM input.

    Returns
    -------
    dict
        Counters: sessions, files, transformed, skipped, errors.
    """
    counts = _new_counts()
    tools = config["tools"]

    for subject, session, session_dir in iter_session_dirs(input_dir):
        counts["sessions"] += 1
        label = f"{subject}/{session}" if session else subject
        logger.info("Processing session: %s", label)

        anat_dir = os.path.join(session_dir, "anat")
        if not os.path.isdir(anat_dir):
            logger.warning("Anatomical directory not found: %s", anat_dir)
            continue
        ref_anat = os.path.join(ref_dir, os.path.relpath(session_dir, input_dir), "anat")
        if not os.path.isdir(ref_anat):
            logger.warning("Reference directory not found: %s", ref_anat)
            continue

        out_dir = os.path.join(anat_dir, "transform_to_orig")
        os.makedirs(out_dir, exist_ok=True)

        current_ref = None
        for name in sorted(os.listdir(anat_dir)):
            in_file = os.path.join(anat_dir, name)
            if not os.path.isfile(in_file) or not split_image_ext(name)[1]:
                continue
            counts["files"] += 1

            acq = acquisition_of(name, ORIG_ACQS)
            if acq is None:
                logger.info("Skipping %s (no recognized acquisition type)", name)
                counts["skipped"] += 1
                continue

            refs = match_acquisition_files(ref_anat, acq, role="phase_mpm", subject=subject)
            if not refs:
                logger.warning("Could not find original %s file for %s", acq, name)
                counts["skipped"] += 1
                continue
            if refs[0] != current_ref:
                logger.info("Reference: %s", os.path.basename(refs[0]))
                current_ref = refs[0]

            try:
                transform_file(
                    tools, in_file, refs[0], os.path.join(out_dir, name), interp, "orig", logger
                )
            except ToolError as e:
                logger.error("Failed to transform %s: %s", name, e)
                counts["errors"] += 1
                continue
            counts["transformed"] += 1

    return counts


def transform_to_mpm(config, input_dir, ref_dir, interp, logger):
    """
    Resample T1w/MTw Chimaps from anat/transform_to_orig onto the PDw
    MPM_<acq> reference in {ref_dir}/.../anat/Supplementary/MPMCalc.

    Returns
    -------
    dict
        Counters: sessions, files, transformed, skipped, errors.
    """
    counts = _new_counts()
    tools = config["tools"]

    for subject, session, session_dir in iter_session_dirs(input_dir):
        counts["sessions"] += 1
        label = f"{subject}/{session}" if session else subject
        logger.info("Processing session: %s", label)

        orig_dir = os.path.join(session_dir, "anat", "transform_to_orig")
        if not os.path.isdir(orig_dir):
            logger.warning("transform_to_orig directory not found: %s", orig_dir)
            continue
        mpm_dir = os.path.join(
            ref_dir, os.path.relpath(session_dir, input_dir), "anat", "Supplementary", "MPMCalc"
        )
        if not os.path.isdir(mpm_dir):
            logger.warning("Reference MPM directory not found: %s", mpm_dir)
            continue

        out_dir = os.path.join(session_dir, "anat", "transform_to_mpm")
        os.makedirs(out_dir, exist_ok=True)

        for acq in MPM_ACQS:
            chimaps = match_acquisition_files(orig_dir, acq, role="chimap", subject=subject)
            if not chimaps:
                continue
            refs = match_acquisition_files(
                mpm_dir, MPM_REFERENCE_ACQ, role="mpm_reference", subject=subject, suffix=acq
            )
            for in_file in chimaps:
                counts["files"] += 1
                name = os.path.basename(in_file)
                if not refs:
                    logger.warning(
                        "Could not find %s MPM_%s reference file for %s",
                        MPM_REFERENCE_ACQ, acq, name
                    )
                    counts["errors"] += 1
                    continue
                logger.info("Transforming %s -> %s", name, os.path.basename(refs[0]))
                try:
                    transform_file(
                        tools, in_file, refs[0], os.path.join(out_dir, name), interp, "mpm", logger
                    )
                except ToolError as e:
                    logger.error("Failed to transform %s: %s", name, e)
                    counts["errors"] += 1
                    continue
                counts["transformed"] += 1

    return counts


def build_parser():
    parser = PipelineArgumentParser(
        description="Resample QSM outputs into original or MPM space with FSL flirt.",
    )
    parser.add_argument("--config", default=None,
                        help="Path to the pipeline YAML config (default: built-in defaults).")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging.")
    sub = parser.add_subparsers(dest="target", required=True)
    for target, help_text in (
        ("orig", "Transform anat images to original input space."),
        ("mpm", "Transform T1w/MTw Chimaps to MPM (PDw) space."),
    ):
        p = sub.add_parser(target, help=help_text)
        p.add_argument("input_dir")
        p.add_argument("ref_dir")
        p.add_argument(
            "--interp", choices=INTERP_MODES, default=DEFAULT_INTERP[target],
            help=f"flirt interpolation (default: {DEFAULT_INTERP[target]}).",
        )
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logger = setup_logging("transform_space", verbose=args.verbose)

    start_time = time.time()
    logger.info("=" * 60)
    logger.info("Transform outputs to %s space", args.target)
    logger.info("Input directory: %s", args.input_dir)
    logger.info("Reference directory: %s", args.ref_dir)
    logger.info("Interpolation: %s", args.interp)
    logger.info("=" * 60)

    try:
        for label, path in (("Input", args.input_dir), ("Reference", args.ref_dir)):
            if not os.path.isdir(path):
                raise PipelineError(f"{label} directory '{path}' does not exist.")
        config = load_pipeline_config(args.config, logger)

        transform = transform_to_orig if args.target == "orig" else transform_to_mpm
        counts = transform(config, args.input_dir, args.ref_dir, args.interp, logger)

    except PipelineError as e:
        logger.error("Fatal: %s", e)
        sys.exit(1)

    logger.info("=" * 60)
    logger.info("Transformation Summary")
    logger.info("Total sessions processed: %d", counts["sessions"])
    logger.info("Total files found: %d", counts["files"])
    logger.info("Successfully transformed: %d", counts["transformed"])
    logger.info("Skipped: %d", counts["skipped"])
    logger.info("Errors: %d", counts["errors"])
    logger.info("=" * 60)
    logger.info("Total runtime: %.2f seconds", time.time() - start_time)

    if counts["errors"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
