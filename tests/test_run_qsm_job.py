import os
import json
import logging

import pytest

import run_qsm_job
from conftest import touch, completed, arg_after, mpm_name, chimap_name
from qsm_utils import PipelineError, ToolError, UnitState, spm_result_path


def fake_qsmxt_outputs(cmd, **kwargs):
    """QSMxT writes <scratch>/<sub>/<ses>/anat/... for the requested unit."""
    scratch = cmd[2]
    subject = arg_after(cmd, "--subjects")
    parts = [subject]
    if "--sessions" in cmd:
        parts.append(arg_after(cmd, "--sessions"))
    touch(os.path.join(scratch, *parts, "anat", f"{subject}_Chimap.nii"))
    return None


def fake_synthstrip_outputs(cmd, **kwargs):
    touch(arg_after(cmd, "-o"))
    touch(arg_after(cmd, "-m"))
    return None


# ============================================================================
# QSMxT
# ============================================================================

def test_qsmxt_unit_relocates_after_success(bids_dir, tmp_path, config, fake_run, logger):
    fake_run.on("qsmxt", fake_qsmxt_outputs)
    out = str(tmp_path / "out")

    state = run_qsm_job.run_qsmxt_unit(config, bids_dir, out, "sub-001", "ses-01", logger)

    assert state is UnitState.RELOCATED
    assert os.path.isfile(os.path.join(out, "sub-001", "ses-01", "anat", "sub-001_Chimap.nii"))
    assert not os.path.exists(
        os.path.join(out, "Supplementary", "sub-001", "ses-01", "sub-001", "ses-01")
    )
    cmd = fake_run.commands("qsmxt")[0]
    assert cmd[1:3] == [bids_dir, os.path.join(out, "Supplementary", "sub-001", "ses-01")]
    assert arg_after(cmd, "--sessions") == "ses-01"


def test_qsmxt_unit_without_session(bids_dir, tmp_path, config, fake_run, logger):
    fake_run.on("qsmxt", fake_qsmxt_outputs)
    out = str(tmp_path / "out")
    state = run_qsm_job.run_qsmxt_unit(config, bids_dir, out, "sub-003", None, logger)
    assert state is UnitState.RELOCATED
    assert os.path.isfile(os.path.join(out, "sub-003", "anat", "sub-003_Chimap.nii"))
    assert "--sessions" not in fake_run.commands("qsmxt")[0]


def test_qsmxt_failure_skips_relocation(bids_dir, tmp_path, config, fake_run, logger):
    def partial_then_fail(cmd, **kwargs):
        fake_qsmxt_outputs(cmd)
        return completed(cmd, 1)
    fake_run.on("qsmxt", partial_then_fail)
    out = str(tmp_path / "out")

    state = run_qsm_job.run_qsmxt_unit(config, bids_dir, out, "sub-001", "ses-01", logger)

    assert state is UnitState.TOOL_FAILED
    assert not os.path.exists(os.path.join(out, "sub-001"))
    assert os.path.isfile(os.path.join(
        out, "Supplementary", "sub-001", "ses-01", "sub-001", "ses-01", "anat", "sub-001_Chimap.nii"
    ))


def test_qsmxt_without_outputs_is_relocation_failure(bids_dir, tmp_path, config, fake_run, logger):
    state = run_qsm_job.run_qsmxt_unit(
        config, bids_dir, str(tmp_path / "out"), "sub-001", "ses-01", logger
    )
    assert state is UnitState.RELOCATION_FAILED


def test_main_exit_codes(bids_dir, tmp_path, fake_run):
    out = str(tmp_path / "out")
    fake_run.on("qsmxt", fake_qsmxt_outputs)
    run_qsm_job.main(["qsmxt", bids_dir, out, "sub-001", "--session", "ses-01"])

    fake_run.on("qsmxt", lambda cmd, **kw: completed(cmd, 2))
    with pytest.raises(SystemExit) as exc:
        run_qsm_job.main(["qsmxt", bids_dir, out, "sub-002", "--session", "ses-01"])
    assert exc.value.code == 1


def test_main_usage_errors_exit_1(bids_dir, tmp_path):
    with pytest.raises(SystemExit) as exc:
        run_qsm_job.main(["synthstrip", bids_dir, str(tmp_path), "sub-001"])
    assert exc.value.code == 1
    with pytest.raises(SystemExit) as exc:
        run_qsm_job.main(["qsmxt", bids_dir, str(tmp_path), "sub-001", "--bogus"])
    assert exc.value.code == 1
    with pytest.raises(SystemExit) as exc:
        run_qsm_job.main(["qsmxt", str(tmp_path / "nope"), str(tmp_path), "sub-001"])
    assert exc.value.code == 1


# ============================================================================
# SynthStrip
# ============================================================================

def test_synthstrip_unit_processes_matching_files(bids_dir, tmp_path, config, fake_run, logger):
    fake_run.on("mri_synthstrip", fake_synthstrip_outputs)
    out = str(tmp_path / "out")

    counts = run_qsm_job.run_synthstrip_unit(
        config, bids_dir, out, "sub-001", "ses-01", ["PDw", "T1w", "MTw"], True, None, logger
    )

    assert counts == {"processed": 2, "failed": 0, "missing": ["MTw"]}
    out_anat = os.path.join(out, "sub-001", "ses-01", "anat")
    base = mpm_name("sub-001", "ses-01", "T1w")[:-len(".nii")]
    assert os.path.isfile(os.path.join(out_anat, f"{base}_brain.nii"))
    assert os.path.isfile(os.path.join(out_anat, f"{base}_mask.nii"))
    with open(os.path.join(out_anat, f"{base}_brain.json")) as f:
        assert json.load(f)["ProcessingParameters"]["NoCSF"] is True
    for cmd in fake_run.commands("mri_synthstrip"):
        assert "--no-csf" in cmd
    assert fake_run.commands("fslmaths") == []


def test_synthstrip_processes_every_match_with_warning(bids_dir, tmp_path, config, fake_run, logger, caplog):
    anat = os.path.join(bids_dir, "sub-001", "ses-01", "anat")
    plain = touch(os.path.join(anat, "sub-001_ses-01_acq-T1w_echo-01_part-mag.nii"))
    fake_run.on("mri_synthstrip", fake_synthstrip_outputs)
    out = str(tmp_path / "out")

    with caplog.at_level(logging.WARNING):
        counts = run_qsm_job.run_synthstrip_unit(
            config, bids_dir, out, "sub-001", "ses-01", ["T1w"], False, None, logger
        )

    assert counts == {"processed": 2, "failed": 0, "missing": []}
    inputs = sorted(arg_after(cmd, "-i") for cmd in fake_run.commands("mri_synthstrip"))
    assert inputs == sorted([plain, os.path.join(anat, mpm_name("sub-001", "ses-01", "T1w"))])
    assert "Multiple files found for acq-T1w" in caplog.text
    out_anat = os.path.join(out, "sub-001", "ses-01", "anat")
    assert os.path.isfile(os.path.join(out_anat, "sub-001_ses-01_acq-T1w_echo-01_part-mag_brain.nii"))
    assert os.path.isfile(os.path.join(out_anat, "sub-001_ses-01_acq-T1w_echo-01_part-mag_mask.nii"))


def test_synthstrip_failure_skips_holefill_for_that_file(bids_dir, tmp_path, config, fake_run, logger):
    def fail_t1w(cmd, **kwargs):
        if "acq-T1w" in arg_after(cmd, "-i"):
            return completed(cmd, 1, stderr="RuntimeError: out of memory\n")
        return fake_synthstrip_outputs(cmd)
    fake_run.on("mri_synthstrip", fail_t1w)

    counts = run_qsm_job.run_synthstrip_unit(
        config, bids_dir, str(tmp_path / "out"), "sub-001", "ses-01", ["T1w", "PDw"], False, 1, logger
    )

    assert counts["processed"] == 1
    assert counts["failed"] == 1
    fslmaths = fake_run.commands("fslmaths")
    assert len(fslmaths) == 2
    assert all("acq-PDw" in cmd[1] for cmd in fslmaths)


def test_synthstrip_main_fails_when_nothing_processed(bids_dir, tmp_path, fake_run):
    with pytest.raises(SystemExit) as exc:
        run_qsm_job.main([
            "synthstrip", bids_dir, str(tmp_path / "out"), "sub-002", "--session", "ses-01",
            "--acqs", "T1w",
        ])
    assert exc.value.code == 1


# ============================================================================
# Coregistration and averaging
# ============================================================================

def make_chimaps(tmp_path):
    src = tmp_path / "sub-001" / "ses-01" / "anat" / "transform_to_orig"
    return {acq: touch(str(src / chimap_name("sub-001", "ses-01", acq))) for acq in ("PDw", "T1w", "MTw")}


def test_coreg_moves_result_and_replaces_old(tmp_path, config, fake_run, logger):
    chimaps = make_chimaps(tmp_path)
    out_dir = str(tmp_path / "coreg_toPDw")
    old = touch(os.path.join(
        out_dir, "sub-001_ses-01_acq-T1w_rec-loraksRsos_desc-coregToPDw_MPM_Chimap.nii"
    ), "old")
    touch(old[:-len(".nii")] + ".json", "{}")

    def spm(cmd, **kwargs):
        touch(spm_result_path(chimaps["T1w"]), "new")
        return None
    fake_run.on("matlab", spm)

    final = run_qsm_job.run_coreg(config, chimaps["T1w"], chimaps["PDw"], out_dir, logger)

    assert final == old
    assert open(final).read() == "new"
    assert not os.path.exists(spm_result_path(chimaps["T1w"]))
    with open(final[:-len(".nii")] + ".json") as f:
        meta = json.load(f)
    assert meta["Sources"]["reference_image"] == chimaps["PDw"]
    assert meta["Units"] == "Hz"
    assert meta["ProcessingParameters"]["Options"]["cost_fun"] == "nmi"


def test_coreg_errors(tmp_path, config, fake_run, logger):
    chimaps = make_chimaps(tmp_path)
    with pytest.raises(PipelineError, match="Moving image not found"):
        run_qsm_job.run_coreg(config, str(tmp_path / "nope.nii"), chimaps["PDw"], str(tmp_path), logger)
    with pytest.raises(ToolError, match="Coregistered result not found"):
        run_qsm_job.run_coreg(config, chimaps["MTw"], chimaps["PDw"], str(tmp_path / "c"), logger)


def test_average_names_outputs_by_subject_session(tmp_path, config, fake_run, logger):
    chimaps = make_chimaps(tmp_path)
    out_dir = str(tmp_path / "coreg_toPDw")

    merged, mean = run_qsm_job.run_average(
        config, chimaps["PDw"], [chimaps["T1w"], chimaps["MTw"]], out_dir, logger
    )

    assert merged == os.path.join(out_dir, "sub-001_ses-01_merged_Chimap.nii")
    assert mean == os.path.join(out_dir, "sub-001_ses-01_mean_Chimap.nii")
    (merge_cmd, merge_kw), (mean_cmd, mean_kw) = fake_run.calls
    assert merge_cmd == ["fslmerge", "-t", merged, chimaps["PDw"], chimaps["T1w"], chimaps["MTw"]]
    assert mean_cmd == ["fslmaths", merged, "-Tmean", mean]
    assert merge_kw["env"]["FSLOUTPUTTYPE"] == "NIFTI"
    assert os.path.isfile(os.path.join(out_dir, "sub-001_ses-01_mean_Chimap.json"))


def test_average_generic_names_and_missing_inputs(tmp_path, config, fake_run, logger, caplog):
    ref = touch(str(tmp_path / "reference_Chimap.nii"))
    other = touch(str(tmp_path / "other_Chimap.nii"))
    with caplog.at_level(logging.WARNING):
        merged, mean = run_qsm_job.run_average(config, ref, [other, other], str(tmp_path / "o"), logger)
    assert os.path.basename(merged) == "merged_Chimap.nii"
    assert os.path.basename(mean) == "mean_Chimap.nii"
    assert "generic names" in caplog.text

    with pytest.raises(PipelineError, match="not found"):
        run_qsm_job.run_average(config, ref, [str(tmp_path / "gone.nii")], str(tmp_path / "o"), logger)
