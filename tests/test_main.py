"""Tests for the command line entry point."""

import json

import pytest

from acorn_builder import main
from acorn_builder.exceptions import ResolutionFailedError, SourceFetchError
from acorn_builder.harness import CommandResult, Verdict, VerdictStatus
from acorn_builder.pipeline import BUILT, FAILED, PipelineResult, StageResult
from acorn_builder.preflight import CheckResult, PreflightReport
from acorn_builder.recipes import ResolutionReport


@pytest.fixture(autouse=True)
def no_log_setup(mocker):
    """Keep the CLI from reconfiguring loguru sinks during tests."""
    return mocker.patch.object(main, "setup_logging")


class TestParser:
    """Tests for argument parsing."""

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args([])

    def test_build_defaults(self, tmp_path):
        args = main.build_parser().parse_args(["build", "--recipes", str(tmp_path / "r.json")])

        assert args.kernel_path == "boot/vmlinuz-lts"
        assert args.commands == []
        assert args.boot_test is False

    def test_preflight_network_flag(self):
        assert main.build_parser().parse_args(["preflight"]).skip_network is False
        assert main.build_parser().parse_args(["preflight", "--skip-network"]).skip_network is True

    def test_repeated_run_options(self):
        args = main.build_parser().parse_args(["test", "a.iso", "-c", "uname -a", "--run", "id"])

        assert args.commands == ["uname -a", "id"]

    def test_logging_flags_passed_through(self, no_log_setup, tmp_path, mocker):
        mocker.patch.object(main, "run_preflight", return_value=PreflightReport())

        main.main(["--debug", "--log-dir", str(tmp_path), "preflight"])

        no_log_setup.assert_called_once_with(debug=True, trace=False, log_dir=tmp_path)


class TestBuildCommand:
    """Tests for the build subcommand."""

    def test_success(self, recipes_file, tmp_path, mocker, capsys):
        run = mocker.patch.object(
            main, "run_pipeline", return_value=PipelineResult([StageResult("iso", BUILT)])
        )

        code = main.main(
            [
                "--cache-dir",
                str(tmp_path / "cache"),
                "build",
                "--recipes",
                str(recipes_file),
                "-o",
                str(tmp_path / "out"),
                "--label",
                "TESTLBL",
                "--boot-test",
                "-c",
                "uname -a",
            ]
        )

        assert code == 0
        config, cache_dir = run.call_args.args
        assert [recipe.name for recipe in config.recipes] == ["pkgtool"]
        assert config.iso_label == "TESTLBL"
        assert config.boot_test is True
        assert config.test_commands == ["uname -a"]
        assert cache_dir == tmp_path / "cache"
        assert "iso" in capsys.readouterr().out

    def test_failed_stage_exits_nonzero(self, recipes_file, tmp_path, mocker):
        mocker.patch.object(
            main,
            "run_pipeline",
            return_value=PipelineResult([StageResult("rootfs", FAILED, "conflict")]),
        )

        assert main.main(["build", "--recipes", str(recipes_file), "-o", str(tmp_path)]) == 1

    def test_build_error_is_reported(self, recipes_file, tmp_path, mocker):
        error = ResolutionFailedError({"pkgtool": SourceFetchError("pkgtool", "https://a", "HTTP 404")})
        mocker.patch.object(main, "run_pipeline", side_effect=error)

        assert main.main(["build", "--recipes", str(recipes_file), "-o", str(tmp_path)]) == 1

    def test_invalid_recipe_file(self, tmp_path):
        path = tmp_path / "recipes.json"
        path.write_text(json.dumps({"recipes": [{"name": "broken"}]}))

        assert main.main(["build", "--recipes", str(path)]) == 1


class TestTestCommand:
    """Tests for the test subcommand."""

    def test_prints_verdict_and_transcript(self, mocker, capsys):
        verdict = Verdict(
            status=VerdictStatus.PASSED,
            transcript=[CommandResult("uname -s", ["Linux"])],
            elapsed=12.5,
        )
        run = mocker.patch.object(main, "run_test", return_value=verdict)

        code = main.main(["test", "acornos.iso", "-c", "uname -s", "--timeout", "60"])

        out = capsys.readouterr().out
        assert code == 0
        assert "passed: ready (12.5s)" in out
        assert "$ uname -s" in out
        assert "  Linux" in out
        assert run.call_args.kwargs == {"timeout": 60.0, "commands": ["uname -s"]}

    def test_timeout_exits_nonzero(self, mocker):
        mocker.patch.object(
            main, "run_test", return_value=Verdict(status=VerdictStatus.TIMED_OUT, reason="no response")
        )

        assert main.main(["test", "acornos.iso"]) == 1


class TestStatusAndPreflight:
    """Tests for the status and preflight subcommands."""

    def test_status_lists_missing_recipe(self, recipes_file, tmp_path, capsys):
        code = main.main(["--cache-dir", str(tmp_path / "cache"), "status", "--recipes", str(recipes_file)])

        out = capsys.readouterr().out
        assert code == 0
        assert "[missing] pkgtool sha256-" in out

    def test_preflight_failure(self, mocker, capsys):
        report = PreflightReport([CheckResult.fail("cpio tool", "Not found", "sudo dnf install cpio")])
        mocker.patch.object(main, "run_preflight", return_value=report)

        assert main.main(["preflight"]) == 1
        assert "Preflight failed: 0/1 checks ok" in capsys.readouterr().out

    def test_preflight_skip_network(self, tmp_path, mocker):
        run = mocker.patch.object(main, "run_preflight", return_value=PreflightReport())

        assert main.main(["--cache-dir", str(tmp_path), "preflight", "--skip-network"]) == 0
        run.assert_called_once_with(tmp_path, check_mirrors=False)


class TestFetchCommand:
    """Tests for the fetch subcommand."""

    def test_prints_resolved_recipes(self, recipes_file, tmp_path, mocker, capsys):
        report = ResolutionReport()
        report.resolved["pkgtool"] = mocker.Mock(path=tmp_path / "pkgtool", source="cache")
        engine = mocker.patch.object(main, "RecipeEngine")
        engine.return_value.resolve_all.return_value = report

        code = main.main(["--cache-dir", str(tmp_path / "cache"), "fetch", "--recipes", str(recipes_file)])

        assert code == 0
        engine.assert_called_once_with(cache_dir=tmp_path / "cache")
        recipes = engine.return_value.resolve_all.call_args.args[0]
        assert [recipe.name for recipe in recipes] == ["pkgtool"]
        assert f"pkgtool: {tmp_path / 'pkgtool'} (cache)" in capsys.readouterr().out

    def test_failed_recipe_exits_nonzero(self, recipes_file, tmp_path, mocker):
        report = ResolutionReport()
        report.failures["pkgtool"] = SourceFetchError("pkgtool", "https://a.example/pkgtool", "HTTP 404")
        engine = mocker.patch.object(main, "RecipeEngine")
        engine.return_value.resolve_all.return_value = report

        assert main.main(["--cache-dir", str(tmp_path), "fetch", "--recipes", str(recipes_file)]) == 1
