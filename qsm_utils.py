#!/usr/bin/env python3

# ============================================================================
# SHARED UTILITIES FOR THE QSM SLURM ORCHESTRATOR
# Helper functions used by the batch submitter (submit_qsm_jobs.py), the
# job-side runner (run_qsm_job.py), the space transformer
# (transform_space.py) and the output report (check_outputs.py).
#
# Version: 1.0
# Last updated: 10/16/26
# ============================================================================

import os
import re
import sys
import copy
import glob as globmod
import json
import enum
import shlex
import shutil
import logging
import argparse
import subprocess
from datetime import datetime
from dataclasses import dataclass, field
from typing import Optional

import yaml


class PipelineError(Exception):
    """Raised for unrecoverable pipeline errors."""
    pass


class ConfigError(PipelineError):
    """Raised when the pipeline configuration is invalid."""
    pass


class ToolError(PipelineError):
    """Raised when a delegated external tool exits non-zero."""

    def __init__(self, message, returncode=None):
        super().__init__(message)
        self.returncode = returncode


class SubmissionError(PipelineError):
    """Raised when sbatch fails or its acknowledgment cannot be parsed."""
    pass


class RelocationError(PipelineError):
    """Raised when results cannot be copied from scratch to the output tree."""
    pass


# ============================================================================
# Section A: Data Model
# ============================================================================

MODE_PARALLEL = "parallel"
MODE_SEQUENTIAL = "sequential"

DEPENDENCY_TYPES = ("afterany", "afterok")


class JobStatus(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"


class UnitState(enum.Enum):
    """Lifecycle of one work unit. Transitions only move forward."""
    DISCOVERED = "discovered"
    DISPATCHED = "dispatched"
    TOOL_SUCCEEDED = "tool_succeeded"
    TOOL_FAILED = "tool_failed"
    RELOCATED = "relocated"
    RELOCATION_FAILED = "relocation_failed"

    @property
    def is_terminal(self):
        return self in (UnitState.TOOL_FAILED, UnitState.RELOCATED, UnitState.RELOCATION_FAILED)


@dataclass(frozen=True)
class DiscoveredSession:
    subject: str
    session: Optional[str]
    anat_dir: str
    has_valid_data: bool


@dataclass(frozen=True)
class WorkUnit:
    """One subject/session dispatched as a single job."""
    subject: str
    session: Optional[str]
    acquisition_types: tuple
    input_dir: str
    output_dir: str
    options: dict = field(default_factory=dict, compare=False)

    @property
    def label(self):
        if self.session:
            return f"{self.subject}_{self.session}"
        return self.subject

    @property
    def path_parts(self):
        if self.session:
            return (self.subject, self.session)
        return (self.subject,)


@dataclass
class JobHandle:
    """A submitted SLURM job. The id is whatever sbatch acknowledged."""
    job_id: str
    job_name: str = ""
    depends_on: tuple = ()
    dependency_type: Optional[str] = None
    status: JobStatus = JobStatus.PENDING

    def __post_init__(self):
        if not isinstance(self.job_id, str) or not self.job_id.strip():
            raise ValueError(
                f"JobHandle requires a non-empty job id, got: {self.job_id!r}"
            )


@dataclass(frozen=True)
class ResultLocation:
    scratch_path: str
    final_path: str


# ============================================================================
# Section B: Logging
# ============================================================================

def setup_logging(name, log_file=None, verbose=False):
    """
    Configure a named logger writing to stdout and, optionally, a log file.

    Parameters
    ----------
    name : str
        Logger name (usually the calling script).
    log_file : str or None
        Optional path to a log file. Parent directories are created.
    verbose : bool
        If True, log at DEBUG level instead of INFO.

    Returns
    -------
    logging.Logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.handlers = []
    logger.propagate = False

    formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)
        fh = logging.FileHandler(log_file)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger


class PipelineArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def comma_list(value):
    """argparse type for 'PDw,T1w,MTw' style options."""
    items = [v.strip() for v in value.split(",") if v.strip()]
    if not items:
        raise argparse.ArgumentTypeError("expected a comma-separated list")
    return items


def positive_int(value):
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got '{value}'")
    if n <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got '{value}'")
    return n


# ============================================================================
# Section C: Configuration
# ============================================================================

DEFAULT_CONFIG = {
    "slurm": {
        "sbatch": ["sbatch"],
        "partitions": ["short", "group_servers", "gr_weiskopf"],
        "log_dir": None,
        "python": None,
    },
    "jobs": {
        "qsmxt": {"cpus": 32, "mem": "120G", "time": 120, "exclude_nodes": ["drachenkopf"]},
        "synthstrip": {"cpus": 8, "mem": "32G", "time": 60, "exclude_nodes": []},
        "coreg": {"cpus": 8, "mem": "8G", "time": 30, "exclude_nodes": []},
        "average": {"cpus": 4, "mem": "4G", "time": 30, "exclude_nodes": []},
    },
    "tools": {
        "qsmxt": ["qsmxt"],
        "synthstrip": ["mri_synthstrip"],
        "fsl_prefix": [],
        "matlab": ["matlab"],
        "spm_dir": None,
        "gpu_probe": ["nvidia-smi"],
    },
    "qsmxt": {
        "premade": "gre",
        "do_qsm": True,
        "do_swi": True,
        "labels_file": None,
        "recs": ["rec-loraksRsos"],
        "acqs": ["acq-T1w", "acq-PDw", "acq-MTw"],
        "runs": [],
        "bf_algorithm": "pdf",
        "use_existing_masks": False,
        "existing_masks_pipeline": "synthstrip",
        "qsm_reference": None,
        "extra_args": [],
    },
    "synthstrip": {
        "acqs": ["PDw", "T1w", "MTw"],
    },
    "bids": {
        "session_prefix": "ses-",
    },
}

_COMMAND_KEYS = ("qsmxt", "synthstrip", "matlab", "gpu_probe")


def _merge_config(base, override):
    """Recursively merge override into a deep copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def _as_command(value, where):
    """Normalize a command given as a list or a shell-style string."""
    if isinstance(value, str):
        value = shlex.split(value)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where} must be a list of strings or a command string, got: {value!r}")
    return value


def _require_str_list(value, where, allow_empty=True):
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where} must be a list of strings, got: {value!r}")
    if not allow_empty and len(value) == 0:
        raise ConfigError(f"{where} must be a non-empty list.")


def load_pipeline_config(config_path, logger):
    """
    Load and validate the pipeline YAML config.

    The file is merged over DEFAULT_CONFIG, so it only needs the keys that
    differ from the defaults. With config_path=None the defaults are
    validated and returned.

    Parameters
    ----------
    config_path : str or None
    logger : logging.Logger

    Returns
    -------
    dict
        Validated config dictionary.

    Raises
    ------
    ConfigError
        On a missing file, YAML parse error or invalid value.
    """
    user_config = {}
    if config_path is not None:
        if not os.path.isfile(config_path):
            raise ConfigError(f"Pipeline config not found: {config_path}")
        with open(config_path, "r") as f:
            try:
                user_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"YAML parse error in {config_path}: {e}")
        if user_config is None:
            raise ConfigError(f"Config file is empty: {config_path}")
        if not isinstance(user_config, dict):
            raise ConfigError(f"Config file must contain a mapping: {config_path}")

    for section, value in user_config.items():
        if section not in DEFAULT_CONFIG:
            logger.warning(
                "Unknown config section '%s' will be ignored.", section
            )
        elif not isinstance(value, dict):
            raise ConfigError(f"Config section '{section}' must be a mapping, got: {value!r}")
    for step, job_cfg in user_config.get("jobs", {}).items():
        if step not in DEFAULT_CONFIG["jobs"]:
            logger.warning("Unknown job type 'jobs.%s' will be ignored.", step)

    config = _merge_config(DEFAULT_CONFIG, user_config)

    # slurm
    slurm = config["slurm"]
    slurm["sbatch"] = _as_command(slurm["sbatch"], "slurm.sbatch")
    if not slurm["sbatch"]:
        raise ConfigError("slurm.sbatch must not be empty.")
    _require_str_list(slurm["partitions"], "slurm.partitions", allow_empty=False)
    for key in ("log_dir", "python"):
        if slurm.get(key) is not None and not isinstance(slurm[key], str):
            raise ConfigError(f"slurm.{key} must be a path string or null, got: {slurm[key]!r}")

    # jobs
    for step in DEFAULT_CONFIG["jobs"]:
        job_cfg = config["jobs"][step]
        if not isinstance(job_cfg, dict):
            raise ConfigError(f"jobs.{step} must be a mapping.")
        cpus = job_cfg.get("cpus")
        if not isinstance(cpus, int) or isinstance(cpus, bool) or cpus <= 0:
            raise ConfigError(f"jobs.{step}.cpus must be a positive integer, got: {cpus!r}")
        if not isinstance(job_cfg.get("mem"), (str, int)):
            raise ConfigError(f"jobs.{step}.mem must be a string (e.g. '32G') or megabytes.")
        if not isinstance(job_cfg.get("time"), (str, int)):
            raise ConfigError(f"jobs.{step}.time must be minutes or a SLURM time string.")
        job_cfg.setdefault("exclude_nodes", [])
        _require_str_list(job_cfg["exclude_nodes"], f"jobs.{step}.exclude_nodes")

    # tools
    tools = config["tools"]
    for key in _COMMAND_KEYS:
        tools[key] = _as_command(tools[key], f"tools.{key}")
        if not tools[key]:
            raise ConfigError(f"tools.{key} must not be empty.")
    tools["fsl_prefix"] = _as_command(tools["fsl_prefix"], "tools.fsl_prefix")
    if tools.get("spm_dir") is not None and not isinstance(tools["spm_dir"], str):
        raise ConfigError(f"tools.spm_dir must be a path string or null, got: {tools['spm_dir']!r}")

    # qsmxt
    qsmxt = config["qsmxt"]
    if not isinstance(qsmxt.get("premade"), str) or not qsmxt["premade"]:
        raise ConfigError("qsmxt.premade must be a non-empty string.")
    for key in ("do_qsm", "do_swi", "use_existing_masks"):
        if not isinstance(qsmxt.get(key), bool):
            raise ConfigError(f"qsmxt.{key} must be true or false, got: {qsmxt.get(key)!r}")
    _require_str_list(qsmxt["acqs"], "qsmxt.acqs", allow_empty=False)
    for key in ("recs", "runs", "extra_args"):
        _require_str_list(qsmxt[key], f"qsmxt.{key}")
    for key in ("labels_file", "bf_algorithm", "qsm_reference", "existing_masks_pipeline"):
        if qsmxt.get(key) is not None and not isinstance(qsmxt[key], str):
            raise ConfigError(f"qsmxt.{key} must be a string or null, got: {qsmxt[key]!r}")
    if qsmxt["use_existing_masks"] and not qsmxt.get("existing_masks_pipeline"):
        raise ConfigError(
            "qsmxt.use_existing_masks is true but qsmxt.existing_masks_pipeline is not set."
        )

    # synthstrip / bids
    _require_str_list(config["synthstrip"]["acqs"], "synthstrip.acqs", allow_empty=False)
    prefix = config["bids"].get("session_prefix")
    if not isinstance(prefix, str) or not prefix:
        raise ConfigError("bids.session_prefix must be a non-empty string.")

    if config_path is not None:
        logger.info("Pipeline config validated successfully: %s", config_path)
    else:
        logger.debug("No config file given, using built-in defaults.")
    return config


def resolve_log_dir(config, output_dir):
    """SLURM log directory: slurm.log_dir if set, else {output_dir}/logs."""
    log_dir = config["slurm"].get("log_dir") or os.path.join(output_dir, "logs")
    os.makedirs(log_dir, exist_ok=True)
    return log_dir


# ============================================================================
# Section D: BIDS Discovery
# ============================================================================

IMAGE_EXTENSIONS = (".nii.gz", ".nii")


def split_image_ext(filename):
    """
    Split a NIfTI filename into (base, extension).

    Only '.nii.gz' and '.nii' are recognized (case-sensitive). For any other
    name the extension is ''.
    """
    for ext in IMAGE_EXTENSIONS:
        if filename.endswith(ext):
            return filename[:-len(ext)], ext
    return filename, ""


def has_image_files(directory):
    """True if directory exists and directly contains at least one image file."""
    if not os.path.isdir(directory):
        return False
    with os.scandir(directory) as entries:
        return any(e.is_file() and split_image_ext(e.name)[1] for e in entries)


def discover_sessions(input_dir, subject, logger, session_prefix="ses-", ordered=False):
    """
    Discover sessions with anatomical image data for one subject.

    Lists the immediate subdirectories of input_dir/subject whose names
    start with session_prefix and yields those whose anat/ directory holds
    at least one .nii or .nii.gz file. If no session directory exists at
    all, the subject-level anat/ directory is used instead (session=None).

    Parameters
    ----------
    input_dir : str
        BIDS root.
    subject : str
        Subject directory name (e.g. "sub-001").
    logger : logging.Logger
    session_prefix : str
        Prefix identifying session directories.
    ordered : bool
        If True, sessions are yielded in sorted order. Otherwise the order is
        that of the filesystem listing.

    Yields
    ------
    DiscoveredSession
        Only sessions with has_valid_data=True.
    """
    subject_dir = os.path.join(input_dir, subject)
    if not os.path.isdir(subject_dir):
        logger.warning(
            "Subject directory '%s' not found. Skipping %s.", subject_dir, subject
        )
        return

    with os.scandir(subject_dir) as entries:
        candidates = [
            e.name for e in entries
            if e.is_dir() and e.name.startswith(session_prefix)
        ]
    if ordered:
        candidates.sort()

    if candidates:
        n_valid = 0
        for session in candidates:
            anat_dir = os.path.join(subject_dir, session, "anat")
            found = DiscoveredSession(
                subject=subject,
                session=session,
                anat_dir=anat_dir,
                has_valid_data=has_image_files(anat_dir),
            )
            if found.has_valid_data:
                n_valid += 1
                logger.info("Found valid session: %s/%s", subject, session)
                yield found
            else:
                logger.info(
                    "Skipping session: %s/%s (no anat directory with .nii or .nii.gz files found)",
                    subject, session
                )
        if n_valid == 0:
            logger.warning("No valid sessions found for subject %s", subject)
        return

    anat_dir = os.path.join(subject_dir, "anat")
    if has_image_files(anat_dir):
        logger.info(
            "Found anatomical data directly in subject directory for %s (no session directories)",
            subject
        )
        yield DiscoveredSession(
            subject=subject, session=None, anat_dir=anat_dir, has_valid_data=True
        )
    else:
        logger.warning("No valid sessions found for subject %s", subject)


def build_work_units(input_dir, output_dir, subjects, acquisition_types, logger,
                     options=None, session_prefix="ses-"):
    """
    Turn discovered sessions into an ordered list of WorkUnits.

    Subjects keep the order given by the caller; sessions within a subject
    are sorted so repeated runs submit in the same order.
    """
    units = []
    for subject in subjects:
        logger.info("Processing subject: %s", subject)
        for found in discover_sessions(
            input_dir, subject, logger, session_prefix=session_prefix, ordered=True
        ):
            units.append(WorkUnit(
                subject=subject,
                session=found.session,
                acquisition_types=tuple(acquisition_types),
                input_dir=input_dir,
                output_dir=output_dir,
                options=dict(options or {}),
            ))
    return units


def iter_session_dirs(root, subject_glob="sub-*", session_glob="ses-*"):
    """
    Walk root/sub-*/ses-* in sorted order.

    Subjects without any session directory are yielded once with
    session=None and the subject directory itself.

    Yields
    ------
    tuple of (str, str or None, str)
        (subject, session, session_dir)
    """
    for subject_dir in sorted(globmod.glob(os.path.join(root, subject_glob))):
        if not os.path.isdir(subject_dir):
            continue
        subject = os.path.basename(subject_dir)
        session_dirs = [
            d for d in sorted(globmod.glob(os.path.join(subject_dir, session_glob)))
            if os.path.isdir(d)
        ]
        if not session_dirs:
            yield subject, None, subject_dir
            continue
        for session_dir in session_dirs:
            yield subject, os.path.basename(session_dir), session_dir


# ============================================================================
# Section E: Filename Matching
# ============================================================================

_ENTITY_RE = re.compile(r"^([A-Za-z0-9]+)-(.+)$")

FIRST_ECHO = ("01", "1")

# Each role lists the filename components a file must carry, beyond its
# acquisition token. "entities" are key-value pairs, "flags" are bare tokens
# and "suffix" is the final token before the extension.
FILE_ROLES = {
    "magnitude": {
        "entities": {"echo": FIRST_ECHO, "part": ("mag",)},
    },
    "phase_mpm": {
        "entities": {"echo": FIRST_ECHO, "part": ("phase",)},
        "suffix": ("MPM",),
    },
    "chimap": {
        "flags": ("MPM",),
        "suffix": ("Chimap",),
    },
    "mpm_reference": {
        "entities": {"echo": FIRST_ECHO, "part": ("mag",)},
        "flags": ("MPM",),
    },
}


def parse_bids_name(filename):
    """
    Parse a BIDS-like image filename into its components.

    'sub-001_ses-01_acq-T1w_echo-01_part-mag_MPM.nii.gz' gives
    entities {sub: 001, ses: 01, acq: T1w, echo: 01, part: mag},
    flags [], suffix 'MPM', extension '.nii.gz'.

    Returns
    -------
    dict or None
        None when the name has no recognized image extension.
    """
    base, ext = split_image_ext(os.path.basename(filename))
    if not ext:
        return None

    tokens = base.split("_")
    entities = {}
    flags = []
    suffix = None
    for i, token in enumerate(tokens):
        m = _ENTITY_RE.match(token)
        if m:
            entities.setdefault(m.group(1), m.group(2))
        elif i == len(tokens) - 1:
            suffix = token
        elif token:
            flags.append(token)

    return {
        "entities": entities,
        "flags": flags,
        "suffix": suffix,
        "extension": ext,
    }


def matches_role(parsed, acq, role, subject=None, suffix=None):
    """Check a parsed filename against FILE_ROLES[role] for one acquisition."""
    rule = FILE_ROLES[role]
    entities = parsed["entities"]

    if entities.get("acq") != acq:
        return False
    if subject is not None:
        label = subject[len("sub-"):] if subject.startswith("sub-") else subject
        if entities.get("sub") != label:
            return False
    for key, allowed in rule.get("entities", {}).items():
        if entities.get(key) not in allowed:
            return False
    for flag in rule.get("flags", ()):
        if flag not in parsed["flags"]:
            return False
    allowed_suffix = (suffix,) if suffix is not None else rule.get("suffix")
    if allowed_suffix and parsed["suffix"] not in allowed_suffix:
        return False
    return True


def match_acquisition_files(directory, acq, role="magnitude", subject=None, suffix=None):
    """
    Find every image file in directory matching an acquisition and role.

    Parameters
    ----------
    directory : str
    acq : str
        Acquisition token without the 'acq-' prefix (e.g. "T1w").
    role : str
        Key of FILE_ROLES.
    subject : str or None
        If set, the file's sub- entity must match.
    suffix : str or None
        Overrides the role's suffix requirement.

    Returns
    -------
    list of str
        Sorted paths of all matches. Empty if none or if directory is missing.
    """
    if role not in FILE_ROLES:
        raise ValueError(f"Unknown file role '{role}'. Must be one of {sorted(FILE_ROLES)}.")
    if not os.path.isdir(directory):
        return []

    matches = []
    with os.scandir(directory) as entries:
        for entry in entries:
            if not entry.is_file():
                continue
            parsed = parse_bids_name(entry.name)
            if parsed is None:
                continue
            if matches_role(parsed, acq, role, subject=subject, suffix=suffix):
                matches.append(entry.path)
    return sorted(matches)


def acquisition_of(filename, choices):
    """Return the file's acq- value if it is one of choices, else None."""
    parsed = parse_bids_name(filename)
    if parsed is None:
        return None
    acq = parsed["entities"].get("acq")
    return acq if acq in choices else None


# ============================================================================
# Section F: External Tool Invocation
# ============================================================================

def run_tool(cmd, logger, cwd=None, env=None, description=None, stream=False):
    """
    Run one external tool and treat any non-zero exit as failure.

    Parameters
    ----------
    cmd : list of str
    logger : logging.Logger
    cwd : str or None
    env : dict or None
    description : str or None
        Label used in log and error messages. Defaults to the executable.
    stream : bool
        If True, the tool's output goes straight to this process's stdout
        and stderr (the SLURM job log) instead of being captured.

    Returns
    -------
    subprocess.CompletedProcess

    Raises
    ------
    ToolError
        If the executable is missing or exits non-zero.
    """
    label = description or os.path.basename(cmd[0])
    logger.info("Running %s: %s", label, shlex.join(cmd))

    try:
        if stream:
            result = subprocess.run(cmd, cwd=cwd, env=env)
        else:
            result = subprocess.run(
                cmd, cwd=cwd, env=env, capture_output=True, text=True
            )
    except FileNotFoundError:
        raise ToolError(f"{label} not found on PATH: {cmd[0]}", returncode=127)

    if result.returncode != 0:
        err_msg = f"Exit code {result.returncode}"
        if not stream:
            stderr_lines = [ln for ln in (result.stderr or "").splitlines() if ln.strip()]
            stdout_lines = [ln for ln in (result.stdout or "").splitlines() if ln.strip()]
            if stderr_lines:
                err_msg = stderr_lines[-1]
            elif stdout_lines:
                err_msg = stdout_lines[-1]
        raise ToolError(
            f"{label} failed (exit {result.returncode}): {err_msg}",
            returncode=result.returncode,
        )

    return result


def detect_gpu(tools_cfg, logger):
    """
    Probe for a usable GPU with the configured probe command (nvidia-smi).

    Returns True only if the probe is on PATH and exits zero.
    """
    probe = tools_cfg.get("gpu_probe") or []
    if not probe or shutil.which(probe[0]) is None:
        logger.info("No GPU detected - using CPU only")
        return False
    try:
        result = subprocess.run(probe, capture_output=True, text=True)
    except OSError as e:
        logger.info("GPU probe failed (%s) - using CPU only", e)
        return False
    if result.returncode == 0:
        logger.info("GPU detected - using GPU acceleration")
        return True
    logger.info("No GPU detected - using CPU only")
    return False


def fsl_env(out_path):
    """Environment pinning FSLOUTPUTTYPE to the extension of out_path."""
    env = os.environ.copy()
    env["FSLOUTPUTTYPE"] = "NIFTI_GZ" if out_path.endswith(".nii.gz") else "NIFTI"
    return env


def fsl_cmd(tools_cfg, name):
    return list(tools_cfg.get("fsl_prefix") or []) + [name]


# ============================================================================
# Section G: Command Builders
# ============================================================================

def build_qsmxt_cmd(qsmxt_cfg, tools_cfg, input_dir, scratch_dir, subject, session=None):
    """
    Build the QSMxT command line for one subject (and optionally session).

    --sessions is only passed when a session is given; without it QSMxT
    processes every session of the subject.
    """
    cmd = list(tools_cfg["qsmxt"]) + [
        input_dir,
        scratch_dir,
        "--premade", qsmxt_cfg["premade"],
    ]
    if qsmxt_cfg.get("do_qsm"):
        cmd.append("--do_qsm")
    if qsmxt_cfg.get("do_swi"):
        cmd.append("--do_swi")
    if qsmxt_cfg.get("labels_file"):
        cmd += ["--labels_file", qsmxt_cfg["labels_file"]]

    cmd += ["--subjects", subject]
    if session:
        cmd += ["--sessions", session]
    if qsmxt_cfg.get("runs"):
        cmd += ["--runs"] + list(qsmxt_cfg["runs"])
    if qsmxt_cfg.get("recs"):
        cmd += ["--recs"] + list(qsmxt_cfg["recs"])
    cmd += ["--acqs"] + list(qsmxt_cfg["acqs"])

    if qsmxt_cfg.get("bf_algorithm"):
        cmd += ["--bf_algorithm", qsmxt_cfg["bf_algorithm"]]
    if qsmxt_cfg.get("use_existing_masks"):
        cmd += [
            "--use_existing_masks",
            "--existing_masks_pipeline", qsmxt_cfg["existing_masks_pipeline"],
        ]
    if qsmxt_cfg.get("qsm_reference"):
        cmd += ["--qsm_reference", qsmxt_cfg["qsm_reference"]]

    cmd += list(qsmxt_cfg.get("extra_args") or [])
    cmd.append("--auto_yes")
    return cmd


def build_synthstrip_cmd(tools_cfg, in_file, out_brain, out_mask, use_gpu=False, no_csf=False):
    cmd = list(tools_cfg["synthstrip"]) + [
        "-i", in_file,
        "-o", out_brain,
        "-m", out_mask,
    ]
    if use_gpu:
        cmd.append("--gpu")
    if no_csf:
        cmd.append("--no-csf")
    return cmd


def build_holefill_cmd(tools_cfg, mask, iterations):
    """fslmaths closing: N dilations then N erosions, written back onto mask."""
    ops = ["-dilF"] * iterations + ["-eroF"] * iterations
    return fsl_cmd(tools_cfg, "fslmaths") + [mask] + ops + [mask]


def build_remask_cmd(tools_cfg, in_file, mask, out_brain):
    return fsl_cmd(tools_cfg, "fslmaths") + [in_file, "-mas", mask, out_brain]


def build_fslmerge_cmd(tools_cfg, merged_out, inputs):
    return fsl_cmd(tools_cfg, "fslmerge") + ["-t", merged_out] + list(inputs)


def build_fslmean_cmd(tools_cfg, merged, mean_out):
    return fsl_cmd(tools_cfg, "fslmaths") + [merged, "-Tmean", mean_out]


def build_flirt_cmd(tools_cfg, in_file, ref_file, out_file, interp=None):
    """flirt resampling through the header (sform/qform) transform only."""
    cmd = fsl_cmd(tools_cfg, "flirt") + [
        "-in", in_file,
        "-ref", ref_file,
        "-out", out_file,
    ]
    if interp:
        cmd += ["-interp", interp]
    cmd += ["-applyxfm", "-usesqform"]
    return cmd


# SPM12 coregister (estimate & reslice). These options drive both the
# generated MATLAB batch and the provenance sidecar.
SPM_COREG_OPTIONS = {
    "cost_fun": "nmi",
    "sep": [4, 2, 1, 0.6],
    "tol": [0.02, 0.02, 0.02, 0.001, 0.001, 0.001, 0.01, 0.01, 0.01, 0.001, 0.001, 0.001],
    "fwhm": [7, 7],
    "interp": 4,
    "wrap": [0, 0, 0],
    "mask": 0,
    "prefix": "coreg_",
}


def _matlab_literal(value):
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(f"{v:g}" for v in value) + "]"
    return f"{value:g}"


def build_spm_coreg_cmd(tools_cfg, moving, reference, options=None):
    """
    Build a MATLAB -batch call running SPM12 coregister (estwrite).

    SPM writes the resliced image next to the moving image with the
    configured prefix (default 'coreg_').
    """
    opts = dict(SPM_COREG_OPTIONS)
    if options:
        opts.update(options)

    batch = "matlabbatch{1}.spm.spatial.coreg.estwrite"
    statements = []
    if tools_cfg.get("spm_dir"):
        statements.append(f"addpath({_matlab_literal(tools_cfg['spm_dir'])})")
    statements += [
        "spm_jobman('initcfg')",
        f"{batch}.ref = cellstr({_matlab_literal(reference)})",
        f"{batch}.source = cellstr({_matlab_literal(moving)})",
        f"{batch}.other = {{''}}",
        f"{batch}.eoptions.cost_fun = {_matlab_literal(opts['cost_fun'])}",
        f"{batch}.eoptions.sep = {_matlab_literal(opts['sep'])}",
        f"{batch}.eoptions.tol = {_matlab_literal(opts['tol'])}",
        f"{batch}.eoptions.fwhm = {_matlab_literal(opts['fwhm'])}",
        f"{batch}.roptions.interp = {_matlab_literal(opts['interp'])}",
        f"{batch}.roptions.wrap = {_matlab_literal(opts['wrap'])}",
        f"{batch}.roptions.mask = {_matlab_literal(opts['mask'])}",
        f"{batch}.roptions.prefix = {_matlab_literal(opts['prefix'])}",
        "spm_jobman('run', matlabbatch)",
    ]
    return list(tools_cfg["matlab"]) + ["-batch", "; ".join(statements)]


def spm_result_path(moving, prefix=SPM_COREG_OPTIONS["prefix"]):
    """Where SPM writes the resliced copy of moving."""
    return os.path.join(os.path.dirname(moving), prefix + os.path.basename(moving))


def coreg_output_path(moving, output_dir):
    """
    Final name of a coregistered image in output_dir.

    '_desc-coregToPDw' is inserted before '_MPM', or before the extension
    when the name has no '_MPM' part.
    """
    name = os.path.basename(moving)
    if "_MPM" in name:
        name = name.replace("_MPM", "_desc-coregToPDw_MPM", 1)
    else:
        base, ext = split_image_ext(name)
        name = f"{base}_desc-coregToPDw{ext}"
    return os.path.join(output_dir, name)


# ============================================================================
# Section H: Mask Post-Processing
# ============================================================================

def fill_mask_holes(tools_cfg, in_file, mask, brain, iterations, logger):
    """
    Close holes in a brain mask and regenerate the extracted brain.

    The mask is dilated `iterations` times and then eroded `iterations`
    times in place. The brain image is then rebuilt as in_file masked by the
    refined mask.

    Raises
    ------
    ValueError
        If iterations is not a positive integer.
    ToolError
        If either fslmaths call fails.
    """
    if not isinstance(iterations, int) or isinstance(iterations, bool) or iterations <= 0:
        raise ValueError(f"Hole-filling iterations must be a positive integer, got: {iterations!r}")
    if not os.path.isfile(mask):
        raise ToolError(f"Mask not found for hole-filling: {mask}")

    logger.info("Hole-filling mask (%d dilations + %d erosions): %s", iterations, iterations, mask)
    run_tool(
        build_holefill_cmd(tools_cfg, mask, iterations), logger,
        env=fsl_env(mask), description="fslmaths (hole-filling)",
    )
    run_tool(
        build_remask_cmd(tools_cfg, in_file, mask, brain), logger,
        env=fsl_env(brain), description="fslmaths (re-mask)",
    )
    logger.info("Regenerated brain image with refined mask: %s", brain)


# ============================================================================
# Section I: Provenance
# ============================================================================

def sidecar_path(image_path):
    base, ext = split_image_ext(image_path)
    return base + ".json"


def write_sidecar(image_path, description, sources, steps, parameters, logger,
                  software=None, extra=None):
    """
    Write a JSON provenance sidecar next to image_path.

    Returns
    -------
    str
        Path to the written JSON file.
    """
    meta = {
        "Description": description,
        "Sources": sources,
        "ProcessingSteps": list(steps),
        "ProcessingParameters": parameters,
    }
    if software:
        meta["SoftwareInformation"] = software
    meta["ProcessingTimestamp"] = datetime.now().astimezone().isoformat(timespec="seconds")
    if extra:
        meta.update(extra)

    out_path = sidecar_path(image_path)
    with open(out_path, "w") as f:
        json.dump(meta, f, indent=2)
        f.write("\n")
    logger.info("JSON sidecar created: %s", out_path)
    return out_path


def write_command_record(output_dir, filename, argv, options, logger):
    """Record the invoking command line and resolved options as plain text."""
    os.makedirs(output_dir, exist_ok=True)
    out_path = os.path.join(output_dir, filename)
    with open(out_path, "w") as f:
        f.write(f"Command executed on {datetime.now().astimezone().isoformat(timespec='seconds')}:\n")
        f.write(shlex.join(argv) + "\n\n")
        f.write("Full command with options:\n")
        for key, value in options.items():
            if isinstance(value, (list, tuple)):
                value = " ".join(str(v) for v in value)
            f.write(f"  {key}: {value}\n")
    logger.info("Command saved to: %s", out_path)
    return out_path


# ============================================================================
# Section J: SLURM Submission and Dependency Tracking
# ============================================================================

_JOB_ID_RE = re.compile(r"^(?:Submitted batch job\s+)?(\d+)(?:;\S+)?$")


def parse_job_id(stdout):
    """
    Extract the job id from sbatch output.

    Accepts '--parsable' output ('12345' or '12345;cluster') and the default
    'Submitted batch job 12345'. The last matching line wins.

    Raises
    ------
    SubmissionError
        If no job id can be found.
    """
    for line in reversed((stdout or "").splitlines()):
        m = _JOB_ID_RE.match(line.strip())
        if m:
            return m.group(1)
    raise SubmissionError(
        f"Could not parse a job id from sbatch output: {(stdout or '').strip()!r}"
    )


def format_dependency(handles, dependency_type="afterany"):
    """
    Format a --dependency value for the given handles.

    Returns None when there are no handles.
    """
    if dependency_type not in DEPENDENCY_TYPES:
        raise ValueError(
            f"Invalid dependency type '{dependency_type}'. Must be one of {DEPENDENCY_TYPES}."
        )
    handles = [h for h in handles if h is not None]
    if not handles:
        return None
    return f"{dependency_type}:" + ":".join(h.job_id for h in handles)


def chain_dependency(handles, mode):
    """
    The handle the next submission must wait for.

    Sequential mode chains onto the last submitted handle; parallel mode
    never adds a dependency.
    """
    if mode == MODE_SEQUENTIAL:
        return handles[-1] if handles else None
    if mode == MODE_PARALLEL:
        return None
    raise ValueError(f"Invalid submission mode '{mode}'.")


def build_sbatch_cmd(command, job_name, job_cfg, slurm_cfg, log_dir, dependency=None):
    cmd = list(slurm_cfg["sbatch"]) + [
        "--parsable",
        "-p", ",".join(slurm_cfg["partitions"]),
    ]
    if job_cfg.get("exclude_nodes"):
        cmd += ["-x", ",".join(job_cfg["exclude_nodes"])]
    cmd += [
        "-c", str(job_cfg["cpus"]),
        "--mem", str(job_cfg["mem"]),
        "--time", str(job_cfg["time"]),
        "-J", job_name,
        "-o", os.path.join(log_dir, f"%j_{job_name}.out"),
    ]
    if dependency:
        cmd.append(f"--dependency={dependency}")
    cmd += ["--wrap", shlex.join(command)]
    return cmd


def submit_job(command, job_name, job_cfg, slurm_cfg, log_dir, logger,
               dependencies=(), dependency_type="afterany", dry_run=False):
    """
    Submit one command as a SLURM job.

    Parameters
    ----------
    command : list of str
        The command the job runs (wrapped with sbatch --wrap).
    job_name : str
    job_cfg : dict
        Resource block from config["jobs"].
    slurm_cfg : dict
        config["slurm"].
    log_dir : str
    logger : logging.Logger
    dependencies : sequence of JobHandle
        Jobs this one waits for. Empty for no dependency.
    dependency_type : str
        'afterany' (run regardless of outcome) or 'afterok' (success only).
    dry_run : bool
        Log the sbatch call and return a placeholder handle without running.

    Returns
    -------
    JobHandle

    Raises
    ------
    SubmissionError
        If sbatch is missing, exits non-zero, or prints no parsable id.
    """
    dependencies = tuple(h for h in dependencies if h is not None)
    dependency = format_dependency(dependencies, dependency_type)
    cmd = build_sbatch_cmd(command, job_name, job_cfg, slurm_cfg, log_dir, dependency)

    if dry_run:
        logger.info("[DRY RUN] %s", shlex.join(cmd))
        return JobHandle(
            job_id=f"dryrun-{job_name}",
            job_name=job_name,
            depends_on=dependencies,
            dependency_type=dependency_type if dependencies else None,
        )

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError:
        raise SubmissionError(f"sbatch not found on PATH: {cmd[0]}")

    if result.returncode != 0:
        stderr_lines = [ln for ln in (result.stderr or "").splitlines() if ln.strip()]
        err_msg = stderr_lines[-1] if stderr_lines else f"Exit code {result.returncode}"
        raise SubmissionError(f"sbatch failed for {job_name}: {err_msg}")

    job_id = parse_job_id(result.stdout)
    handle = JobHandle(
        job_id=job_id,
        job_name=job_name,
        depends_on=dependencies,
        dependency_type=dependency_type if dependencies else None,
    )
    if dependency:
        logger.info("Submitted batch job %s for %s with dependency %s", job_id, job_name, dependency)
    else:
        logger.info("Submitted batch job %s for %s", job_id, job_name)
    return handle


def submit_work_units(units, step, mode, build_command, job_cfg, slurm_cfg, log_dir,
                      logger, dry_run=False):
    """
    Submit one job per work unit, chaining them in sequential mode.

    The ordered list of handles is the only chain state: each submission's
    dependency is chain_dependency(handles, mode). Sequential chains use
    'afterany' so a failed job does not block the remainder.

    A unit whose submission fails is logged and returned in failed_units;
    the chain continues from the last successfully submitted handle.

    Returns
    -------
    tuple of (list of (WorkUnit, JobHandle), list of (WorkUnit, str))
    """
    submitted = []
    failed_units = []
    handles = []

    for unit in units:
        previous = chain_dependency(handles, mode)
        job_name = f"{step}_{unit.label}"
        try:
            handle = submit_job(
                build_command(unit), job_name, job_cfg, slurm_cfg, log_dir, logger,
                dependencies=(previous,) if previous else (),
                dependency_type="afterany",
                dry_run=dry_run,
            )
        except SubmissionError as e:
            logger.error("Submission failed for %s: %s", unit.label, e)
            failed_units.append((unit, str(e)))
            continue
        handles.append(handle)
        submitted.append((unit, handle))

    return submitted, failed_units


# ============================================================================
# Section K: Output Relocation
# ============================================================================

def scratch_dir_for(output_dir, subject, session=None):
    """Per-unit scratch area: {output_dir}/Supplementary/{subject}[/{session}]."""
    parts = [output_dir, "Supplementary", subject]
    if session:
        parts.append(session)
    return os.path.join(*parts)


def relocate_results(location, logger):
    """
    Copy-merge scratch results into the final output tree.

    Same-named files in final_path are overwritten (with a warning when
    final_path already exists); unrelated files already there are kept. The
    scratch subtree is deleted only after the copy succeeded.

    Parameters
    ----------
    location : ResultLocation
    logger : logging.Logger

    Returns
    -------
    bool
        True on success.

    Raises
    ------
    RelocationError
        If the scratch results are missing or the copy fails. Scratch data
        is left in place.
    """
    src = location.scratch_path
    dst = location.final_path

    if not os.path.isdir(src):
        raise RelocationError(f"Scratch results not found: {src}")

    if os.path.exists(dst):
        logger.warning("%s already exists in output directory", dst)
        logger.warning("Existing files will be overwritten!")

    try:
        os.makedirs(os.path.dirname(dst), exist_ok=True)
        shutil.copytree(src, dst, dirs_exist_ok=True)
    except (OSError, shutil.Error) as e:
        logger.error("Failed to copy results to output directory: %s", e)
        logger.error("Data remains in supplementary directory: %s", src)
        raise RelocationError(f"Failed to relocate {src} -> {dst}: {e}")

    try:
        shutil.rmtree(src)
    except OSError as e:
        logger.warning("Results copied but scratch copy could not be removed (%s): %s", src, e)
    else:
        logger.info("Successfully moved data to %s", dst)
    return True
