import json

import pytest

import orchestrator
from coverage_steps import Step
from coverage_errors import (
    MergeFailed,
    NoFragmentsProduced,
    ReportGenerationFailed,
    TestRunFailed,
)


def report_files(cfg) -> set[str]:
    report_dir = cfg.report_dir_path()
    return {p.relative_to(report_dir).as_posix() for p in report_dir.rglob("*") if p.is_file()}


def test_end_to_end(fake_config, fake_toolchain, launcher):
    outcome = orchestrator.do_run_coverage(fake_config, launcher=launcher)

    assert outcome.report_index == fake_config.workdir / "coverage" / "index.html"
    assert outcome.report_index.is_file()
    assert outcome.warnings == []
    assert outcome.record.succeeded

    # One merge, consuming both fragments the test run produced.
    [merge] = fake_toolchain.calls_to("llvm-profdata")
    assert merge.count(".profraw") == 2
    assert len(fake_toolchain.calls_to("llvm-cov")) == 1

    # Intermediates are gone; the report stays.
    assert list(fake_config.workdir.glob("*.profraw")) == []
    assert not fake_config.merged_profile_path().exists()
    assert launcher.opened == [str(outcome.report_index)]


def test_report_gets_the_test_binary(fake_config, fake_toolchain, launcher):
    orchestrator.do_run_coverage(fake_config, launcher=launcher)
    [report] = fake_toolchain.calls_to("llvm-cov")
    deps = fake_config.build_output_path().as_posix()
    assert f"show {deps}/cerboy-0123abcd -Xdemangler=rustfilt" in report
    assert ".d " not in report


def test_rerun_produces_the_same_report_files(fake_config, launcher):
    orchestrator.do_run_coverage(fake_config, launcher=launcher)
    first = report_files(fake_config)
    orchestrator.do_run_coverage(fake_config, launcher=launcher)
    assert report_files(fake_config) == first
    assert "index.html" in first


def test_stale_fragments_are_not_merged(fake_config, fake_toolchain, launcher):
    stale = fake_config.workdir / "stale-999-x.profraw"
    stale.write_text("stale")
    orchestrator.do_run_coverage(fake_config, launcher=launcher)

    [merge] = fake_toolchain.calls_to("llvm-profdata")
    assert "stale-999-x.profraw" not in merge


def test_failed_test_run_short_circuits(fake_config, fake_toolchain, launcher, monkeypatch):
    monkeypatch.setenv("FAKE_CARGO_EXIT", "1")
    with pytest.raises(TestRunFailed) as excinfo:
        orchestrator.do_run_coverage(fake_config, launcher=launcher)

    assert excinfo.value.returncode == 1
    assert fake_toolchain.calls_to("llvm-profdata") == []
    assert fake_toolchain.calls_to("llvm-cov") == []
    # Partial fragments are left for inspection.
    assert len(fake_config.fragment_paths()) == 2
    assert launcher.opened == []


def test_no_fragments_halts_before_merge(fake_config, fake_toolchain, launcher, monkeypatch):
    monkeypatch.setenv("FAKE_CARGO_NO_PROFRAW", "1")
    with pytest.raises(NoFragmentsProduced):
        orchestrator.do_run_coverage(fake_config, launcher=launcher)

    assert fake_toolchain.calls_to("llvm-profdata") == []
    assert fake_toolchain.calls_to("llvm-cov") == []


def test_hung_test_run_times_out(fake_config, fake_toolchain, launcher, monkeypatch):
    monkeypatch.setenv("FAKE_CARGO_SLEEP", "5")
    fake_config.step_timeout_s = 0.5
    with pytest.raises(TestRunFailed, match="did not finish"):
        orchestrator.do_run_coverage(fake_config, launcher=launcher)
    assert fake_toolchain.calls_to("llvm-profdata") == []


def test_merge_failure_keeps_fragments(fake_config, fake_toolchain, launcher, monkeypatch):
    monkeypatch.setenv("FAKE_PROFDATA_EXIT", "1")
    with pytest.raises(MergeFailed) as excinfo:
        orchestrator.do_run_coverage(fake_config, launcher=launcher)

    assert "malformed instrumentation profile data" in excinfo.value.output
    assert len(fake_config.fragment_paths()) == 2
    assert fake_toolchain.calls_to("llvm-cov") == []


def test_report_failure(fake_config, launcher, monkeypatch):
    monkeypatch.setenv("FAKE_COV_EXIT", "2")
    with pytest.raises(ReportGenerationFailed) as excinfo:
        orchestrator.do_run_coverage(fake_config, launcher=launcher)
    assert excinfo.value.returncode == 2
    assert excinfo.value.exit_code == 14
    assert fake_config.merged_profile_path().is_file()


def test_wildcard_objects_run_through_the_shell(fake_config, fake_toolchain, launcher):
    fake_config.explicit_objects = False
    fake_config.binary_glob = "cerboy-????????"
    orchestrator.do_run_coverage(fake_config, launcher=launcher)

    [report] = fake_toolchain.calls_to("llvm-cov")
    # By the time llvm-cov sees it, the shell has expanded the glob.
    assert f"{fake_config.build_output_path().as_posix()}/cerboy-0123abcd " in report
    assert "?" not in report.split(" -Xdemangler")[0]


def test_viewer_failure_does_not_fail_the_run(fake_config, launcher):
    launcher.returncode = 1
    outcome = orchestrator.do_run_coverage(fake_config, launcher=launcher)

    assert outcome.record.succeeded
    assert [w.kind for w in outcome.warnings] == ["ViewerLaunchWarning"]
    assert outcome.report_index.is_file()


def test_run_record_is_written_on_failure(fake_config, launcher, monkeypatch, tmp_path):
    monkeypatch.setenv("FAKE_CARGO_NO_PROFRAW", "1")
    fake_config.record_path = tmp_path / "records" / "run.json"
    with pytest.raises(NoFragmentsProduced):
        orchestrator.do_run_coverage(fake_config, launcher=launcher)

    record = json.loads(fake_config.record_path.read_text())
    assert record["succeeded"] is False
    assert record["failure_kind"] == "NoFragmentsProduced"
    assert [s["name"] for s in record["steps"]] == [
        "resolve-toolchain",
        "remove-stale",
        "run-tests",
        "collect-fragments",
    ]
    assert record["steps"][2]["exit_code"] == 0
    assert record["steps"][-1]["outcome"] == "failed"


def test_run_record_on_success(fake_config, launcher, tmp_path):
    fake_config.record_path = tmp_path / "run.json"
    fake_config.open_report = False
    orchestrator.do_run_coverage(fake_config, launcher=launcher)

    record = json.loads(fake_config.record_path.read_text())
    assert record["succeeded"] is True
    assert record["failure_kind"] is None
    assert record["steps"][-1] == {
        **record["steps"][-1],
        "name": "open-report",
        "outcome": "skipped",
    }
    assert launcher.opened == []


def test_plan_describes_every_step(fake_config):
    lines = orchestrator.do_plan(fake_config)
    assert len(lines) == 9
    assert lines[1] == (
        "2. remove-stale; deletes *.profraw, cerboy.profdata; fails with StaleArtifactsRemain"
    )
    assert lines[4] == (
        "5. merge-profile; reads *.profraw; writes cerboy.profdata; fails with MergeFailed"
    )
    assert lines[-1] == "9. open-report; reads coverage/index.html; best-effort"


def test_clean_keeps_report_directory(fake_config, launcher):
    orchestrator.do_run_coverage(fake_config, launcher=launcher)
    (fake_config.workdir / "left-1-a.profraw").write_text("raw")

    removed = orchestrator.do_clean(fake_config)

    assert fake_config.workdir / "left-1-a.profraw" in removed
    assert fake_config.report_dir_path().is_dir()
    assert list(fake_config.report_dir_path().iterdir()) == []
    assert orchestrator.do_clean(fake_config) == []


def test_unrunnable_cargo_is_recorded_as_a_failed_test_run(
    fake_config, fake_toolchain, launcher, tmp_path
):
    fake_toolchain.cargo.chmod(0o644)
    fake_config.record_path = tmp_path / "run.json"
    with pytest.raises(TestRunFailed, match="Could not run"):
        orchestrator.do_run_coverage(fake_config, launcher=launcher)

    record = json.loads(fake_config.record_path.read_text())
    assert record["succeeded"] is False
    assert record["failure_kind"] == "TestRunFailed"
    assert record["steps"][-1]["name"] == "run-tests"
    assert record["steps"][-1]["outcome"] == "failed"


def test_unexpected_exception_is_recorded_as_a_failure(fake_config, launcher, tmp_path):
    def explode(ctx):
        raise RuntimeError("boom")

    fake_config.record_path = tmp_path / "run.json"
    with pytest.raises(RuntimeError, match="boom"):
        orchestrator.do_run_coverage(
            fake_config, launcher=launcher, steps=[Step("explode", explode)]
        )

    record = json.loads(fake_config.record_path.read_text())
    assert record["succeeded"] is False
    assert record["failure_kind"] == "RuntimeError"
    [step] = record["steps"]
    assert step["name"] == "explode"
    assert step["outcome"] == "failed"
    assert step["message"] == "RuntimeError: boom"


def test_clean_reports_what_it_cannot_delete(fake_config, capsys):
    (fake_config.workdir / "cerboy-1-a.profraw").write_bytes(b"raw")
    fake_config.merged_profile_path().mkdir()

    removed = orchestrator.do_clean(fake_config)

    assert removed == [fake_config.workdir / "cerboy-1-a.profraw"]
    assert "WARNING: [clean] Could not delete cerboy.profdata" in capsys.readouterr().err
