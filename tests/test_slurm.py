import shlex

import pytest

from conftest import completed, arg_after
from qsm_utils import (
    JobHandle,
    JobStatus,
    WorkUnit,
    SubmissionError,
    MODE_PARALLEL,
    MODE_SEQUENTIAL,
    parse_job_id,
    format_dependency,
    chain_dependency,
    build_sbatch_cmd,
    submit_job,
    submit_work_units,
)


def make_units(n):
    return [
        WorkUnit(f"sub-00{i}", "ses-01", ("acq-T1w",), "/in", "/out")
        for i in range(1, n + 1)
    ]


def dependency_of(cmd):
    deps = [c for c in cmd if c.startswith("--dependency=")]
    return deps[0][len("--dependency="):] if deps else None


@pytest.mark.parametrize("stdout, expected", [
    ("12345\n", "12345"),
    ("12345;cluster\n", "12345"),
    ("Submitted batch job 12345\n", "12345"),
    ("sbatch: warning: something\n678\n", "678"),
])
def test_parse_job_id(stdout, expected):
    assert parse_job_id(stdout) == expected


@pytest.mark.parametrize("stdout", ["", "\n", "error: invalid partition", "job 12a"])
def test_parse_job_id_rejects_garbage(stdout):
    with pytest.raises(SubmissionError):
        parse_job_id(stdout)


def test_job_handle_requires_id():
    with pytest.raises(ValueError):
        JobHandle("")
    with pytest.raises(ValueError):
        JobHandle("   ")
    assert JobHandle("42").status is JobStatus.PENDING


def test_format_dependency():
    assert format_dependency([]) is None
    assert format_dependency([None]) is None
    assert format_dependency([JobHandle("1")]) == "afterany:1"
    assert format_dependency([JobHandle("1"), JobHandle("2")], "afterok") == "afterok:1:2"
    with pytest.raises(ValueError):
        format_dependency([JobHandle("1")], "after")


def test_chain_dependency():
    a, b = JobHandle("1"), JobHandle("2")
    assert chain_dependency([], MODE_SEQUENTIAL) is None
    assert chain_dependency([a, b], MODE_SEQUENTIAL) is b
    assert chain_dependency([a, b], MODE_PARALLEL) is None
    with pytest.raises(ValueError):
        chain_dependency([a], "batch")


def test_build_sbatch_cmd(config):
    cmd = build_sbatch_cmd(
        ["python", "job.py", "qsmxt", "/data/my input"], "qsmxt_sub-001",
        config["jobs"]["qsmxt"], config["slurm"], "/logs", dependency="afterany:7",
    )
    assert cmd[:2] == ["sbatch", "--parsable"]
    assert arg_after(cmd, "-p") == "short,group_servers,gr_weiskopf"
    assert arg_after(cmd, "-x") == "drachenkopf"
    assert arg_after(cmd, "-c") == "32"
    assert arg_after(cmd, "--mem") == "120G"
    assert arg_after(cmd, "--time") == "120"
    assert arg_after(cmd, "-o") == "/logs/%j_qsmxt_sub-001.out"
    assert "--dependency=afterany:7" in cmd
    assert shlex.split(arg_after(cmd, "--wrap")) == ["python", "job.py", "qsmxt", "/data/my input"]

    cmd = build_sbatch_cmd(["true"], "x", config["jobs"]["coreg"], config["slurm"], "/logs")
    assert "-x" not in cmd
    assert dependency_of(cmd) is None


def test_submit_job(config, fake_run, logger, tmp_path):
    first = submit_job(["true"], "a", config["jobs"]["coreg"], config["slurm"], str(tmp_path), logger)
    second = submit_job(
        ["true"], "b", config["jobs"]["coreg"], config["slurm"], str(tmp_path), logger,
        dependencies=[first], dependency_type="afterok",
    )
    assert (first.job_id, second.job_id) == ("1001", "1002")
    assert second.depends_on == (first,)
    assert second.dependency_type == "afterok"
    calls = fake_run.commands("sbatch")
    assert dependency_of(calls[0]) is None
    assert dependency_of(calls[1]) == "afterok:1001"


def test_submit_job_failures(config, fake_run, logger, tmp_path):
    args = (["true"], "a", config["jobs"]["coreg"], config["slurm"], str(tmp_path), logger)

    fake_run.on("sbatch", lambda cmd, **kw: completed(cmd, 1, stderr="sbatch: error: invalid partition\n"))
    with pytest.raises(SubmissionError, match="invalid partition"):
        submit_job(*args)

    fake_run.on("sbatch", lambda cmd, **kw: completed(cmd, 0, stdout="queued somewhere\n"))
    with pytest.raises(SubmissionError, match="Could not parse"):
        submit_job(*args)

    def missing(cmd, **kw):
        raise FileNotFoundError(cmd[0])
    fake_run.on("sbatch", missing)
    with pytest.raises(SubmissionError, match="not found"):
        submit_job(*args)


def test_dry_run_never_calls_sbatch(config, fake_run, logger, tmp_path):
    handle = submit_job(
        ["true"], "qsmxt_sub-001", config["jobs"]["qsmxt"], config["slurm"], str(tmp_path),
        logger, dry_run=True,
    )
    assert handle.job_id == "dryrun-qsmxt_sub-001"
    assert fake_run.calls == []


def test_sequential_units_chain_afterany(config, fake_run, logger, tmp_path):
    submitted, failed = submit_work_units(
        make_units(3), "qsmxt", MODE_SEQUENTIAL, lambda u: ["run", u.subject],
        config["jobs"]["qsmxt"], config["slurm"], str(tmp_path), logger,
    )
    assert failed == []
    assert [h.job_id for _, h in submitted] == ["1001", "1002", "1003"]
    deps = [dependency_of(c) for c in fake_run.commands("sbatch")]
    assert deps == [None, "afterany:1001", "afterany:1002"]


def test_parallel_units_have_no_dependency(config, fake_run, logger, tmp_path):
    submit_work_units(
        make_units(3), "qsmxt", MODE_PARALLEL, lambda u: ["run", u.subject],
        config["jobs"]["qsmxt"], config["slurm"], str(tmp_path), logger,
    )
    assert [dependency_of(c) for c in fake_run.commands("sbatch")] == [None, None, None]


def test_failed_submission_chain_continues_from_last_valid(config, fake_run, logger, tmp_path):
    def fail_second(cmd, **kw):
        if arg_after(cmd, "-J") == "qsmxt_sub-002_ses-01":
            return completed(cmd, 1, stderr="sbatch: error: QOSMaxSubmitJobPerUserLimit\n")
        return None
    fake_run.on("sbatch", fail_second)

    submitted, failed = submit_work_units(
        make_units(3), "qsmxt", MODE_SEQUENTIAL, lambda u: ["run", u.subject],
        config["jobs"]["qsmxt"], config["slurm"], str(tmp_path), logger,
    )
    assert [u.subject for u, _ in submitted] == ["sub-001", "sub-003"]
    assert [u.subject for u, _ in failed] == ["sub-002"]
    assert "QOSMaxSubmitJobPerUserLimit" in failed[0][1]
    deps = [dependency_of(c) for c in fake_run.commands("sbatch")]
    assert deps == [None, "afterany:1001", "afterany:1001"]
