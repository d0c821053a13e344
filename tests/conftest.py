import os
import logging
import subprocess

import pytest

import qsm_utils


def touch(path, content=""):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(content)
    return path


def mpm_name(subject, session, acq, echo="01", part="mag", suffix="MPM", ext=".nii"):
    """sub-001_ses-01_acq-T1w_rec-loraksRsos_echo-01_part-mag_MPM.nii"""
    ses = f"_{session}" if session else ""
    return f"{subject}{ses}_acq-{acq}_rec-loraksRsos_echo-{echo}_part-{part}_{suffix}{ext}"


def chimap_name(subject, session, acq, ext=".nii"):
    ses = f"_{session}" if session else ""
    return f"{subject}{ses}_acq-{acq}_rec-loraksRsos_MPM_Chimap{ext}"


class FakeRunner:
    """
    Stand-in for subprocess.run that records every call.

    Handlers registered with on() are keyed by the executable (cmd[0]) and
    may return a CompletedProcess, raise, or return None to fall through to
    the default: exit 0, and a fresh numeric job id for sbatch.
    """

    def __init__(self):
        self.calls = []
        self.handlers = {}
        self.next_job_id = 1000

    def on(self, executable, handler):
        self.handlers[executable] = handler

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append((cmd, kwargs))
        handler = self.handlers.get(cmd[0])
        if handler is not None:
            result = handler(cmd, **kwargs)
            if result is not None:
                return result
        if cmd[0] == "sbatch":
            self.next_job_id += 1
            return subprocess.CompletedProcess(cmd, 0, stdout=f"{self.next_job_id}\n", stderr="")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    def commands(self, executable):
        return [cmd for cmd, _ in self.calls if cmd[0] == executable]


def completed(cmd, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)


def arg_after(cmd, flag):
    return cmd[cmd.index(flag) + 1]


@pytest.fixture
def logger():
    log = logging.getLogger("qsm_tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def config(logger):
    return qsm_utils.load_pipeline_config(None, logger)


@pytest.fixture
def fake_run(monkeypatch):
    runner = FakeRunner()
    monkeypatch.setattr(qsm_utils.subprocess, "run", runner)
    return runner


@pytest.fixture
def bids_dir(tmp_path):
    """
    sub-001: ses-01 (T1w, PDw magnitudes + phase), ses-02 (anat without images)
    sub-002: ses-01 (MTw magnitude)
    sub-003: no sessions, subject-level anat
    """
    root = tmp_path / "bids"
    anat = root / "sub-001" / "ses-01" / "anat"
    for acq in ("T1w", "PDw"):
        touch(str(anat / mpm_name("sub-001", "ses-01", acq)))
        touch(str(anat / mpm_name("sub-001", "ses-01", acq, part="phase")))
        touch(str(anat / mpm_name("sub-001", "ses-01", acq, echo="02")))
    touch(str(root / "sub-001" / "ses-02" / "anat" / "notes.txt"))
    touch(str(root / "sub-002" / "ses-01" / "anat" / mpm_name("sub-002", "ses-01", "MTw")))
    touch(str(root / "sub-003" / "anat" / mpm_name("sub-003", None, "T1w", ext=".nii.gz")))
    return str(root)
