"""Tests for webhook notifications."""

import json

import httpx as httpx_lib
import pytest

from resolveq.models import ConflictOutcome, ConflictReport, Ledger, LedgerEntry
from resolveq.notifier import Notifier


def _ledger():
    return Ledger(
        fixed=[LedgerEntry("a.py:1:x", "ok")],
        blocked=[LedgerEntry("b.py:2:y", "conflict")],
        conflicts=[ConflictReport("s.py", "b0-1", "b0-2", ConflictOutcome.ESCALATED,
                                  rounds=2)],
    )


@pytest.mark.asyncio
async def test_sends_webhook(httpx_mock):
    """Sends correct webhook POST."""
    httpx_mock.add_response(status_code=200)

    notifier = Notifier(webhook_url="https://hook.example.com/cb",
                        events=["run.completed"])
    await notifier.notify("run.completed", "r1", _ledger())
    await notifier.close()

    req = httpx_mock.get_request()
    body = json.loads(req.content)
    assert body["event"] == "run.completed"
    assert body["run_id"] == "r1"
    assert body["counts"] == {"fixed": 1, "deferred": 0, "false_positive": 0, "blocked": 1}
    assert body["escalated"] == [{"artifact": "s.py", "batches": ["b0-1", "b0-2"]}]


@pytest.mark.asyncio
async def test_failure_event_carries_error(httpx_mock):
    httpx_mock.add_response(status_code=200)
    notifier = Notifier(webhook_url="https://hook.example.com/cb", events=["run.failed"])
    await notifier.notify("run.failed", "r1", error="bad config")
    await notifier.close()

    body = json.loads(httpx_mock.get_request().content)
    assert body == {"event": "run.failed", "run_id": "r1", "error": "bad config"}


@pytest.mark.asyncio
async def test_filters_unsubscribed_events():
    """Events not in list → no request sent (no httpx_mock needed since no request)."""
    notifier = Notifier(webhook_url="https://hook.example.com/cb",
                        events=["run.failed"])
    await notifier.notify("run.completed", "r1", _ledger())
    await notifier.close()


@pytest.mark.asyncio
async def test_no_webhook_noop():
    """No webhook configured → silent noop."""
    notifier = Notifier(webhook_url="", events=["run.completed"])
    await notifier.notify("run.completed", "r1", _ledger())
    await notifier.close()


@pytest.mark.asyncio
async def test_webhook_failure_silent(httpx_mock):
    """Webhook failure → no crash."""
    httpx_mock.add_exception(httpx_lib.ConnectError("unreachable"))
    notifier = Notifier(webhook_url="https://hook.example.com/cb",
                        events=["run.failed"])
    await notifier.notify("run.failed", "r1", error="boom")
    await notifier.close()
