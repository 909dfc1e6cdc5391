import asyncio
import json
import logging

import pytest

from hue_lan_client.config import Config
from hue_lan_client.events import CallbackList
from hue_lan_client.logging import JsonFormatter, configure_logging, redact_mapping, redact_path
from hue_lan_client.metrics import observe_request, record_bridge_eviction, render_metrics
from hue_lan_client.scheduler import Scheduler


def test_json_formatter_includes_extra_fields() -> None:
    record = logging.LogRecord("hue.bridge", logging.INFO, __file__, 1, "Bridge verified", (), None)
    record.serial = "001788aabbcc"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "Bridge verified"
    assert payload["logger"] == "hue.bridge"
    assert payload["serial"] == "001788aabbcc"
    assert "msg" not in payload and "args" not in payload


def test_json_formatter_masks_secret_extras() -> None:
    record = logging.LogRecord("hue.bridge", logging.INFO, __file__, 1, "Registered", (), None)
    record.username = "abc123"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["username"] == "***"
    assert payload["level"] == "INFO"


def test_configure_logging_sets_subsystem_levels() -> None:
    configure_logging(Config(log_level="WARNING", requests_log_level="DEBUG", log_format="json"))
    assert logging.getLogger("hue.bridge").level == logging.WARNING
    assert logging.getLogger("hue.requests").level == logging.DEBUG
    assert logging.getLogger("hue.discovery").level == logging.WARNING
    handler = logging.getLogger("hue.bridge").handlers[0]
    assert isinstance(handler.formatter, JsonFormatter)


def test_configure_logging_plain_format() -> None:
    configure_logging(Config(log_format="plain"))
    handler = logging.getLogger("hue").handlers[0]
    assert not isinstance(handler.formatter, JsonFormatter)
    assert logging.getLogger("hue").level == logging.INFO


def test_redaction_helpers() -> None:
    assert redact_mapping(
        {"username": "abc", "addr": "1.2.3.4", "config": {"whitelist": {"abc": {}}, "name": "Hue"}}
    ) == {
        "username": "***",
        "addr": "1.2.3.4",
        "config": {"whitelist": "***", "name": "Hue"},
    }
    assert redact_mapping({"username": None}) == {"username": None}
    assert redact_path("/api/abc123/lights", "abc123") == "/api/***/lights"
    assert redact_path("/description.xml", None) == "/description.xml"


def test_metrics_render_known_series() -> None:
    observe_request("info", "ok", 0.01)
    record_bridge_eviction("missing")
    text = render_metrics().decode("utf-8")
    assert "hue_requests_total" in text
    assert 'reason="missing"' in text


@pytest.mark.asyncio
async def test_callback_list_isolates_failures() -> None:
    received = []
    callbacks = CallbackList(logging.getLogger("hue.test"), "test")

    def explode(*args):
        raise RuntimeError("boom")

    async def deferred(*args):
        received.append(("async", args))

    callbacks.add(explode)
    callbacks.add(lambda *args: received.append(("sync", args)))
    callbacks.add(deferred)
    callbacks.notify("add", None)
    await asyncio.sleep(0)

    assert received == [("sync", ("add", None)), ("async", ("add", None))]
    assert callbacks.remove(explode)
    assert not callbacks.remove(explode)
    assert len(callbacks) == 2


@pytest.mark.asyncio
async def test_scheduler_next_tick_and_timers() -> None:
    scheduler = Scheduler()
    order = []
    scheduler.next_tick(order.append, "tick")
    handle = scheduler.call_later(0.01, order.append, "cancelled")
    scheduler.call_later(0.02, order.append, "timer")
    handle.cancel()
    order.append("now")

    await asyncio.sleep(0.05)

    assert order == ["now", "tick", "timer"]


@pytest.mark.asyncio
async def test_scheduler_logs_failed_callbacks_and_tasks(caplog, monkeypatch) -> None:
    monkeypatch.setattr(logging.getLogger("hue.scheduler"), "propagate", True)
    scheduler = Scheduler()

    async def fail() -> None:
        raise ValueError("task failure")

    def explode() -> None:
        raise ValueError("callback failure")

    with caplog.at_level(logging.ERROR, logger="hue.scheduler"):
        scheduler.next_tick(explode)
        task = scheduler.spawn(fail(), name="failing")
        await asyncio.sleep(0.01)

    assert task.done()
    assert scheduler.pending_tasks == 0
    messages = [record.getMessage() for record in caplog.records]
    assert "Scheduled callback failed" in messages
    assert "Background task failed" in messages
