import logging

import pytest
from unittest.mock import patch
from conftest import FakePackageManager, RecordingBuilder, make_builder_class
from buildffmpeg import (
    AcquireOutcome,
    Component,
    ExitCode,
    FFmpegBuilder,
    InsufficientSpace,
    IntegrityMismatch,
    Method,
    NotFound,
    Pipeline,
    RequiredDependencyMissing,
    ResolutionRecord,
    StageFailed,
    StageState,
    main,
)


class TopBuilder(FFmpegBuilder):
    """ffmpeg builder with recorded toolchain steps"""

    name = "top"
    repo_url = "https://example.com/top.git"
    prerequisites = []
    seen = {}

    def configure(self):
        type(self).seen = {"version": self.version, "flags": list(self.flags)}
        RecordingBuilder.steps.append((self.name, "configure"))

    def build(self):
        RecordingBuilder.steps.append((self.name, "build"))

    def install(self):
        RecordingBuilder.steps.append((self.name, "install"))


@pytest.fixture
def stack(components):
    return components[:3] + (
        Component(name="top", order=3, builder=TopBuilder),
    )


@pytest.fixture
def make_pipeline(stack, project, source_control):
    def make(installable=("gcc", "make"), probe=lambda c: True, **kwargs):
        return Pipeline(
            components=stack,
            project=project,
            package_manager=FakePackageManager(installable),
            source_control=source_control,
            probe=probe,
            check_space=False,
            system="Linux",
            **kwargs,
        )

    return make


def test_full_run(make_pipeline, source_control):
    pipeline = make_pipeline()
    result = pipeline.run()
    assert result.succeeded
    assert result.version.identifier == "n7.0.2"
    assert result.records["tools"].method is Method.PRIMARY
    assert result.records["beta"].method is Method.SECONDARY
    assert result.stage("tools").state is StageState.SKIPPED
    assert result.stage("top").state is StageState.DONE
    assert TopBuilder.seen == {
        "version": "n7.0.2",
        "flags": ["--enable-alpha", "--enable-beta"],
    }
    assert result.flags == ["--enable-alpha", "--enable-beta"]
    assert ("checkout", "n7.0.2") in source_control.calls


def test_version_query(make_pipeline):
    result = make_pipeline(query="6").run()
    assert result.version.identifier == "n6.9.0"
    assert TopBuilder.seen["version"] == "n6.9.0"


def test_interactive_prompt(make_pipeline):
    with patch("builtins.print"):
        result = make_pipeline(input_fn=lambda _: "n6.1.1").run()
    assert result.version.identifier == "n6.1.1"


def test_version_not_found_before_any_stage(make_pipeline, project):
    with pytest.raises(NotFound):
        make_pipeline(query="zzz").run()
    assert RecordingBuilder.steps == []
    assert not (project.root / "alpha").exists()


def test_primary_optional_is_not_built(make_pipeline):
    result = make_pipeline(installable=("gcc", "make", "libbeta-dev")).run()
    assert result.records["beta"].method is Method.PRIMARY
    assert result.stage("beta").state is StageState.SKIPPED
    assert not any(name == "beta" for name, _ in RecordingBuilder.steps)


def test_unavailable_optional_degrades(stack, project, source_control, caplog):
    beta = make_builder_class("beta", prerequisites=["definitely-not-a-tool-xyz"])
    degraded = (
        stack[0],
        stack[1],
        Component(
            name="beta",
            order=2,
            builder=beta,
            required=False,
            flags=("--enable-beta",),
            pkg_config="beta",
        ),
        stack[3],
    )
    pipeline = Pipeline(
        components=degraded,
        project=project,
        package_manager=FakePackageManager({"gcc", "make"}),
        source_control=source_control,
        probe=lambda c: True,
        check_space=False,
        system="Linux",
    )
    with caplog.at_level(logging.INFO):
        result = pipeline.run()
    assert result.succeeded
    assert result.records["beta"].method is Method.UNAVAILABLE
    assert result.stage("beta").state is StageState.SKIPPED
    assert "--enable-beta" not in result.flags
    assert len(result.warnings) == 1
    logged = [r for r in caplog.records if r.levelno >= logging.WARNING and "beta" in r.getMessage()]
    assert len(logged) == 1


def test_required_missing_aborts_before_any_stage(make_pipeline, project, source_control):
    pipeline = make_pipeline(installable=())
    with pytest.raises(RequiredDependencyMissing) as excinfo:
        pipeline.run()
    assert excinfo.value.record.component == "tools"
    assert excinfo.value.exit_code == ExitCode.DEPENDENCY_MISSING
    assert RecordingBuilder.steps == []
    assert source_control.calls == []
    assert not project.root.exists()


def test_resolution_stops_at_first_missing_required(make_pipeline):
    pipeline = make_pipeline(installable=())
    with pytest.raises(RequiredDependencyMissing):
        pipeline.run()
    assert pipeline.package_manager.attempts == [("gcc", "make")]


def test_stage_failure_reports_partial_result(stack, project, source_control):
    failing = (
        stack[0],
        Component(
            name="alpha", order=1, builder=make_builder_class("alpha", fail_on="install")
        ),
        stack[2],
        stack[3],
    )
    pipeline = Pipeline(
        components=failing,
        project=project,
        package_manager=FakePackageManager({"gcc", "make"}),
        source_control=source_control,
        probe=lambda c: True,
        check_space=False,
        system="Linux",
    )
    with pytest.raises(StageFailed) as excinfo:
        pipeline.run()
    assert (excinfo.value.component, excinfo.value.substep) == ("alpha", "install")
    assert not any(name == "top" for name, _ in RecordingBuilder.steps)


def test_rerun_updates_in_place(make_pipeline):
    make_pipeline().run()
    RecordingBuilder.steps.clear()
    result = make_pipeline().run()
    assert result.succeeded
    built = [s for s in result.stages if s.state is StageState.DONE]
    assert {s.acquired for s in built} == {AcquireOutcome.UPDATED}


def test_space_check(make_pipeline):
    pipeline = make_pipeline()
    pipeline.check_space = True
    with patch.object(pipeline.project, "available_kb", return_value=10):
        with pytest.raises(InsufficientSpace) as excinfo:
            pipeline.run()
    assert excinfo.value.exit_code == ExitCode.INSUFFICIENT_SPACE


class TestMain:
    def run_main(self, argv):
        with pytest.raises(SystemExit) as excinfo:
            main(argv)
        return excinfo.value.code

    @pytest.mark.parametrize(
        "error, code",
        [
            (RequiredDependencyMissing(ResolutionRecord("tools", Method.UNAVAILABLE)), ExitCode.DEPENDENCY_MISSING),
            (NotFound("zzz"), ExitCode.VERSION_NOT_FOUND),
            (IntegrityMismatch("a.tar.bz2", "00", "ff"), ExitCode.INTEGRITY_MISMATCH),
            (StageFailed("srt", "build"), ExitCode.STAGE_FAILED),
        ],
    )
    def test_exit_codes(self, tmp_path, error, code):
        with patch("buildffmpeg.Pipeline.run", side_effect=error):
            assert self.run_main(["-y", "-s", str(tmp_path)]) == code

    def test_success(self, tmp_path):
        with patch("buildffmpeg.Pipeline.run"):
            assert self.run_main(["-y", "-s", str(tmp_path)]) == ExitCode.SUCCESS

    def test_version_is_passed_through(self, tmp_path):
        with patch("buildffmpeg.Pipeline") as mock_pipeline:
            self.run_main(["-v", "7", "-s", str(tmp_path)])
        kwargs = mock_pipeline.call_args.kwargs
        assert kwargs["query"] == "7"
        assert kwargs["input_fn"] is None

    def test_dry_run(self, tmp_path, capsys):
        assert self.run_main(["-n", "-s", str(tmp_path)]) == ExitCode.SUCCESS
        out = capsys.readouterr().out
        assert "BUILD PLAN" in out
        assert "ffmpeg" in out
        assert "No changes were made" in out
        assert not (tmp_path / "ffmpeg").exists()
