"""Tests for the command line entry point."""

import pytest

from chainload.cli import build_parser, main, plan_from_args


class TestBuildParser:
    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.mode == "batch"
        assert args.batches == 10
        assert args.duration == 60.0
        assert args.concurrency is None
        assert args.catalog is None
        assert args.skip_discovery is False

    def test_overrides(self):
        args = build_parser().parse_args(
            [
                "--mode",
                "stream",
                "--duration",
                "30",
                "--concurrency",
                "8",
                "--batch-size",
                "25",
                "--skip-discovery",
                "--skip-scenarios",
                "--seed",
                "7",
                "--output",
                "out.json",
            ]
        )
        assert args.mode == "stream"
        assert args.duration == 30.0
        assert args.concurrency == 8
        assert args.batch_size == 25
        assert args.seed == 7
        assert args.output == "out.json"

    def test_rejects_unknown_mode(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--mode", "burst"])


class TestPlanFromArgs:
    def test_maps_flags(self):
        args = build_parser().parse_args(["--mode", "stream", "--duration", "5", "--skip-scenarios"])
        plan = plan_from_args(args)
        assert plan.mode == "stream"
        assert plan.duration_seconds == 5.0
        assert plan.discovery is True
        assert plan.scenarios is False


class TestMain:
    @pytest.mark.parametrize(
        "argv",
        [["--concurrency", "0"], ["--batch-size", "-1"], ["--batches", "-2"], ["--duration", "0"]],
    )
    def test_invalid_values_exit_before_running(self, argv):
        with pytest.raises(SystemExit) as exc_info:
            main(argv)
        assert exc_info.value.code == 2
