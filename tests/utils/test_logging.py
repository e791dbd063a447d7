"""Tests for structured logging helpers."""

import asyncio
from unittest.mock import Mock

import pytest
import structlog

from modelcycle.utils.logging import (
    REDACTED,
    add_service,
    current_cycle,
    cycle_context,
    family_context,
    log_duration,
    mask_url,
    redact_secrets,
)


class TestLifecycleContext:
    def test_cycle_id_is_bound_inside_block_only(self):
        with cycle_context("poll_tick") as cycle_id:
            assert current_cycle() == cycle_id
            assert structlog.contextvars.get_contextvars()["cycle"] == "poll_tick"

        assert current_cycle() is None

    def test_explicit_cycle_id(self):
        with cycle_context("evaluation_cycle", cycle_id="cycle-1"):
            assert current_cycle() == "cycle-1"

    def test_family_and_job_ids(self):
        with family_context("ranker", job_id="job-1"):
            context = structlog.contextvars.get_contextvars()
            assert context["family_id"] == "ranker"
            assert context["job_id"] == "job-1"

        assert "family_id" not in structlog.contextvars.get_contextvars()

    def test_job_id_is_optional(self):
        with family_context("ranker"):
            assert "job_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_context_follows_fan_out(self):
        async def seen(family_id):
            with family_context(family_id):
                await asyncio.sleep(0)
                ctx = await asyncio.to_thread(structlog.contextvars.get_contextvars)
                return ctx["cycle_id"], ctx["family_id"]

        with cycle_context("poll_tick", cycle_id="tick-7"):
            results = await asyncio.gather(seen("a"), seen("b"))

        assert results == [("tick-7", "a"), ("tick-7", "b")]


class TestRedaction:
    def test_secrets_are_dropped(self):
        event = redact_secrets(None, "info", {"event": "x", "api_key": "k", "family": "a"})

        assert event["api_key"] == REDACTED
        assert event["family"] == "a"

    def test_store_url_password_is_masked(self):
        event = redact_secrets(
            None, "info", {"event": "store_opened", "database_url": "postgresql://u:pw@db/x"}
        )

        assert "pw" not in event["database_url"]
        assert event["database_url"].startswith("postgresql://u:")
        assert event["database_url"].endswith("@db/x")

    def test_sqlite_url_is_kept(self):
        assert mask_url("sqlite:///./modelcycle.db") == "sqlite:///./modelcycle.db"

    def test_unparseable_url_is_redacted(self):
        assert mask_url("not a url") == REDACTED


def test_service_fields():
    event = add_service(None, "info", {"event": "x"})

    assert event["service"] == "modelcycle"
    assert event["version"]


class TestLogDuration:
    def test_logs_completion(self):
        logger = Mock()

        with log_duration("evaluation_cycle", logger, families=2):
            pass

        assert logger.info.call_args.args == ("evaluation_cycle_completed",)
        assert logger.info.call_args.kwargs["families"] == 2
        assert "duration_ms" in logger.info.call_args.kwargs

    def test_logs_failure_and_reraises(self):
        logger = Mock()

        with pytest.raises(RuntimeError):
            with log_duration("poll_tick", logger):
                raise RuntimeError("backend down")

        kwargs = logger.error.call_args.kwargs
        assert logger.error.call_args.args == ("poll_tick_failed",)
        assert kwargs["error"] == "backend down"
        assert kwargs["error_type"] == "RuntimeError"
        logger.info.assert_not_called()
