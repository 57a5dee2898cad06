import json
import logging
import sys
from pathlib import Path

import pytest
from loguru import logger

from points_ledger.__main__ import lifespan, resolve_schedule_path
from points_ledger.core.logging import configure_logging
from points_ledger.core.settings import Settings
from points_ledger.db.session import build_engine, build_session_factory


def test_schedule_path_is_resolved_from_repo_root(tmp_path: Path) -> None:
    default = resolve_schedule_path(Settings(points_schedule_path="config/schedules.toml"))
    assert default == Path(__file__).resolve().parents[1] / "config" / "schedules.toml"

    absolute = tmp_path / "jobs.toml"
    assert resolve_schedule_path(Settings(points_schedule_path=str(absolute))) == absolute


@pytest.mark.asyncio
@pytest.mark.parametrize("enabled", [True, False])
async def test_lifespan_starts_scheduler_when_enabled(tmp_path: Path, enabled: bool) -> None:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}", echo=False)
    config = Settings(points_scheduler_enabled=enabled, points_schedule_path="config/schedules.toml")

    try:
        async with lifespan(config, engine=engine, session_factory=build_session_factory(engine)) as scheduler:
            assert scheduler.is_running is enabled
            assert scheduler.health()["configured_jobs"] == (2 if enabled else 0)
        assert scheduler.is_running is False
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_lifespan_wires_notifications_into_jobs(tmp_path: Path, notifications) -> None:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}", echo=False)
    config = Settings(points_scheduler_enabled=False, points_schedule_path="config/schedules.toml")

    try:
        async with lifespan(
            config, engine=engine, session_factory=build_session_factory(engine), notifications=notifications
        ) as scheduler:
            assert scheduler._notifications is notifications
    finally:
        await engine.dispose()


def test_configure_logging_emits_json(capsys) -> None:
    configure_logging(service_name="points-ledger", environment="staging", version="9.9.9")
    try:
        logger.info("Ledger operation applied", operation="earn", points=10)
        line = capsys.readouterr().out.strip().splitlines()[-1]
    finally:
        logger.remove()
        logger.add(sys.stderr)

    payload = json.loads(line)
    assert payload["message"] == "Ledger operation applied"
    assert payload["level"] == "info"
    assert payload["service"] == "points-ledger"
    assert payload["environment"] == "staging"
    assert payload["operation"] == "earn"
    assert payload["points"] == 10
    assert "trace_id" not in payload


def test_blocking_severities_read_from_comma_separated_env(monkeypatch) -> None:
    monkeypatch.setenv("ABUSE_BLOCKING_SEVERITIES", "High, critical")
    assert Settings().abuse_blocking_severities == ["high", "critical"]

    monkeypatch.setenv("ABUSE_BLOCKING_SEVERITIES", "")
    assert Settings().abuse_blocking_severities == []


def test_stdlib_records_reach_the_json_sink(capsys) -> None:
    configure_logging(service_name="points-ledger", environment="test", version="9.9.9")
    try:
        logging.getLogger("apscheduler.scheduler").warning("Run time of job %s was missed", "{sweep}")
        line = capsys.readouterr().out.strip().splitlines()[-1]
    finally:
        logger.remove()
        logger.add(sys.stderr)
        logging.getLogger().handlers.clear()

    payload = json.loads(line)
    assert payload["message"] == "Run time of job {sweep} was missed"
    assert payload["level"] == "warning"
    assert payload["stdlib_logger"] == "apscheduler.scheduler"
