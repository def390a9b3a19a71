from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from frolf_discord.core.logging_utils import format_event, log_event
from frolf_discord.core.results import HandlerResult, run_operation


def test_format_event_serializes_fields_and_errors() -> None:
    line = format_event(
        "reply.edited",
        correlation_id="corr-1",
        tags=("a", "b"),
        path=Path("/tmp/x"),
        exc=ValueError("bad"),
    )
    payload = json.loads(line)
    assert payload == {
        "event": "reply.edited",
        "correlation_id": "corr-1",
        "tags": ["a", "b"],
        "path": "/tmp/x",
        "error": "bad",
        "error_type": "ValueError",
    }


def test_log_event_respects_level(logger, caplog) -> None:
    with caplog.at_level(logging.INFO, logger=logger.name):
        log_event(logger, logging.DEBUG, "hidden.event")
        log_event(logger, logging.INFO, "shown.event", guild_id="G1")
    messages = [record.message for record in caplog.records]
    assert messages == ['{"event":"shown.event","guild_id":"G1"}']


@pytest.mark.anyio
async def test_run_operation_wraps_plain_return_values(logger, caplog) -> None:
    async def op() -> str:
        return "done"

    with caplog.at_level(logging.INFO, logger=logger.name):
        result = await run_operation("signup.submit", op, logger, guild_id="G1")

    assert result.ok
    assert result.success == "done"
    payload = json.loads(caplog.records[-1].message)
    assert payload["event"] == "handler.done"
    assert payload["operation"] == "signup.submit"
    assert payload["outcome"] == "success"
    assert payload["guild_id"] == "G1"
    assert "duration_ms" in payload


@pytest.mark.anyio
async def test_run_operation_passes_through_failures(logger, caplog) -> None:
    async def op() -> HandlerResult:
        return HandlerResult.failed("invalid tag")

    with caplog.at_level(logging.INFO, logger=logger.name):
        result = await run_operation("claimtag", op, logger)

    assert not result.ok
    assert result.failure == "invalid tag"
    payload = json.loads(caplog.records[-1].message)
    assert payload["outcome"] == "failure"
    assert payload["failure"] == "invalid tag"


@pytest.mark.anyio
async def test_run_operation_captures_exceptions(logger, caplog) -> None:
    async def op() -> None:
        raise RuntimeError("boom")

    with caplog.at_level(logging.INFO, logger=logger.name):
        result = await run_operation("round.create", op, logger)

    assert not result.ok
    assert isinstance(result.error, RuntimeError)
    payload = json.loads(caplog.records[-1].message)
    assert payload["event"] == "handler.error"
    assert payload["error_type"] == "RuntimeError"
    assert caplog.records[-1].levelno == logging.ERROR
