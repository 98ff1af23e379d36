"""
tests/unit/test_cli.py — Demo Entry Point Tests

Argument parsing and the startup exit codes, with the gateway mocked out.

Run with:
    pytest tests/unit/test_cli.py -v
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from shardline.exceptions import GatewayInfoError
from shardline.main import main, parse_args


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.config is None
        assert args.shards is None
        assert args.start == 0
        assert args.end is None
        assert args.events is None
        assert args.quiet is False

    def test_shard_range(self):
        args = parse_args(["--shards", "4", "--start", "1", "--end", "3"])
        assert args.shards == 4
        assert (args.start, args.end) == (1, 3)

    def test_auto_shards(self):
        assert parse_args(["--shards", "auto"]).shards == "auto"

    def test_zero_shards_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(["--shards", "0"])

    def test_repeatable_events(self):
        args = parse_args(["--event", "READY", "--event", "GUILD_CREATE"])
        assert args.events == ["READY", "GUILD_CREATE"]


class TestMain:
    @pytest.mark.asyncio
    async def test_missing_token_exits_2(self, tmp_path):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("logging:\n  console_output: false\n")
        code = await main(["--config", str(cfg), "--quiet"])
        assert code == 2

    @pytest.mark.asyncio
    async def test_lookup_failure_exits_1(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARDLINE_TOKEN", "tok")
        cfg = tmp_path / "config.yaml"
        cfg.write_text("gateway:\n  encoding: json\nlogging:\n  console_output: false\n")

        with patch(
            "shardline.gateway.manager.GatewayInfoClient.fetch",
            new=AsyncMock(side_effect=GatewayInfoError("HTTP 401", status_code=401)),
        ):
            code = await main(["--config", str(cfg), "--quiet"])
        assert code == 1
