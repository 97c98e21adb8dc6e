"""Tests for the command-line interface."""

import json
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner

from followup.cli import WatchCycle, cli
from followup.config import ConfigLoader
from followup.core.errors import TransientResourceError
from followup.core.resilience import CircuitState
from followup.engine.analyzer import FollowupAnalyzer
from followup.engine.resolver import MAIL_SOURCE_BREAKER
from followup.sources.json_source import JsonMailSource


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_config(temp_config_dir: Path) -> Path:
    path = temp_config_dir / "config.yaml"
    path.write_text(
        "user_email: me@example.com\n"
        "analysis:\n"
        "  ai_enabled: false\n"
        "retry:\n"
        "  base_delay_seconds: 0\n"
        "  jitter_seconds: 0\n"
    )
    return path


@pytest.fixture
def export(tmp_path: Path) -> Path:
    sent = datetime.now(UTC) - timedelta(days=10)
    path = tmp_path / "messages.json"
    path.write_text(
        json.dumps(
            [
                {
                    "id": "m1",
                    "subject": "Contract",
                    "sender": "me@example.com",
                    "to": ["alice@example.com"],
                    "sent_date": sent.isoformat(),
                    "body": "Could you send the signed contract back this week?",
                    "conversation_id": "conv-1",
                }
            ]
        )
    )
    return path


# =============================================================================
# Test validate-config
# =============================================================================


class TestValidateConfig:
    """Tests for the validate-config command."""

    def test_valid_config(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(cli, ["validate-config", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_invalid_config(self, runner: CliRunner, temp_config_dir: Path) -> None:
        path = temp_config_dir / "bad.yaml"
        path.write_text("cache:\n  eviction_policy: random\n")

        result = runner.invoke(cli, ["validate-config", "--config", str(path)])

        assert result.exit_code == 1
        assert "Validation error" in result.output


# =============================================================================
# Test analyze
# =============================================================================


class TestAnalyze:
    """Tests for the analyze command."""

    def test_reports_candidate(self, runner: CliRunner, cli_config: Path, export: Path) -> None:
        result = runner.invoke(
            cli, ["analyze", "--messages", str(export), "--config", str(cli_config)]
        )

        assert result.exit_code == 0, result.output
        assert "Follow-ups needed (1)" in result.output
        assert "Candidates:    1" in result.output

    def test_nothing_to_follow_up(
        self, runner: CliRunner, cli_config: Path, export: Path
    ) -> None:
        result = runner.invoke(
            cli,
            [
                "analyze",
                "--messages",
                str(export),
                "--config",
                str(cli_config),
                "--user",
                "someone-else@example.com",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Nothing to follow up on." in result.output

    def test_invalid_config_exits(
        self, runner: CliRunner, temp_config_dir: Path, export: Path
    ) -> None:
        path = temp_config_dir / "bad.yaml"
        path.write_text("batch:\n  batch_size: 0\n")

        result = runner.invoke(cli, ["analyze", "--messages", str(export), "--config", str(path)])

        assert result.exit_code == 1
        assert "Config error" in result.output


# =============================================================================
# Test watch cycles
# =============================================================================


class TestWatchCycle:
    """Tests for the scheduled runs of the watch command."""

    @pytest.fixture
    def loader(self, cli_config: Path) -> ConfigLoader:
        loader = ConfigLoader(cli_config)
        loader.load()
        return loader

    @pytest.fixture
    def cycle(self, loader: ConfigLoader, export: Path) -> WatchCycle:
        source = JsonMailSource(export)
        analyzer = FollowupAnalyzer(loader.config, mail_source=source)
        return WatchCycle(analyzer, source, "me@example.com", loader=loader, debug=True)

    async def test_open_breaker_survives_next_cycle(self, cycle: WatchCycle) -> None:
        analyzer = cycle.analyzer
        first = await cycle.run()
        assert first is not None
        assert [c.id for c in first] == ["m1"]

        analyzer.retry.get_breaker(MAIL_SOURCE_BREAKER).record_failure(
            TransientResourceError("mailbox throttled", status_code=503, should_circuit_break=True)
        )
        operations = analyzer.retry_stats().total_operations

        second = await cycle.run()

        assert second is None
        assert cycle.analyzer is analyzer
        assert analyzer.breaker_states()[MAIL_SOURCE_BREAKER].state is CircuitState.OPEN
        assert analyzer.retry_stats().total_operations == operations + 1

    async def test_reloaded_config_keeps_cache(
        self, cycle: WatchCycle, cli_config: Path
    ) -> None:
        await cycle.run()
        cache = cycle.analyzer.cache

        cli_config.write_text(cli_config.read_text() + "cache:\n  max_entries: 50\n")
        mtime = cli_config.stat().st_mtime
        os.utime(cli_config, (mtime + 10, mtime + 10))

        candidates = await cycle.run()

        assert candidates is not None
        assert cycle.analyzer.cache is cache
        assert cache.options.max_entries == 50
        assert cycle.analyzer.config.cache.max_entries == 50
        assert cache.get_stats().hits >= 1

    async def test_reply_in_reloaded_export_clears_candidate(
        self, cycle: WatchCycle, export: Path
    ) -> None:
        assert await cycle.run()

        items = json.loads(export.read_text())
        items.append(
            {
                "id": "m2",
                "subject": "RE: Contract",
                "sender": "alice@example.com",
                "to": ["me@example.com"],
                "sent_date": (datetime.now(UTC) - timedelta(days=1)).isoformat(),
                "body": "Signed copy attached.",
                "conversation_id": "conv-1",
            }
        )
        export.write_text(json.dumps(items))

        assert await cycle.run() == []
