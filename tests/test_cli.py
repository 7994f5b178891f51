import asyncio
import json
from dataclasses import replace

import pytest

from trafficsim.cli import build_parser, main, parse_journey_mix, run_traffic
from trafficsim.errors import ConfigError


class TestParseJourneyMix:
    def test_none(self):
        assert parse_journey_mix(None) is None

    def test_pattern(self):
        assert parse_journey_mix("buyers") == "buyers"

    def test_weights(self):
        assert parse_journey_mix("30,40,20,10,15,10") == [30.0, 40.0, 20.0, 10.0, 15.0, 10.0]

    def test_single_weight(self):
        assert parse_journey_mix("5") == [5.0]

    def test_json_mapping(self):
        assert parse_journey_mix('{"Quick Buyer": 1}') == {"Quick Buyer": 1}

    @pytest.mark.parametrize("value", ["{bad", "1,x"])
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            parse_journey_mix(value)


class TestMain:
    def test_journeys_command(self, capsys):
        assert main(["journeys"]) == 0
        assert "Researcher" in capsys.readouterr().out

    def test_missing_config_file(self, tmp_path):
        assert main(["--config", str(tmp_path / "missing.json"), "journeys"]) == 2

    def test_unknown_pattern_is_config_error(self):
        assert main(["run", "--users", "1", "--journey-mix", "shoppers"]) == 2

    def test_parser_defaults(self):
        args = build_parser().parse_args(["run"])
        assert args.users == 10
        assert args.failure is None
        assert args.continuous is False
        assert args.duration == 60
        assert build_parser().parse_args(["serve"]).port == 8089


class TestRunTraffic:
    def test_run_writes_report(self, config_factory, restaurant_api, tmp_path):
        config = config_factory(base_success_rate=1.0, large_order_penalty=0.0, card_type_penalties={})
        output = tmp_path / "report.json"

        async def scenario():
            async with restaurant_api() as api:
                args = build_parser().parse_args([
                    "run", "--base-url", api.base_url, "--users", "2",
                    "--journey-mix", "100,0,0,0,0,0",
                    "--failure", "memory_leak", "--failure-duration", "30",
                    "--output", str(output),
                ])
                return await run_traffic(args, config)

        stats = asyncio.run(scenario())
        assert stats.sessions_completed == 2

        report = json.loads(output.read_text())
        assert report["stats"]["sessions"]["completed"] == 2
        assert report["failure"]["success"] is True
        assert report["failure"]["scenario"] == "memory_leak"
        assert len(report["sessions"]) == 2

    def test_continuous_run_stops_spawning_after_duration(self, config_factory, restaurant_api):
        config = config_factory(base_success_rate=1.0, large_order_penalty=0.0, card_type_penalties={})
        config = replace(config, traffic=replace(config.traffic, spawn_interval_min=0.01,
                                                 spawn_interval_max=0.02, burst_spawn_interval=0.0))

        async def scenario():
            async with restaurant_api() as api:
                args = build_parser().parse_args([
                    "run", "--base-url", api.base_url, "--continuous",
                    "--target", "2", "--timing", "normal", "--duration", "0.2",
                    "--journey-mix", "100,0,0,0,0,0",
                ])
                return await run_traffic(args, config)

        stats = asyncio.run(scenario())
        assert stats.sessions_started >= 2
        assert stats.sessions_completed == stats.sessions_started
        assert stats.end_time
