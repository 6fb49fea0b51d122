"""Tests for the headless entry point."""

import asyncio
import io
import logging

import pytest

from conftest import HDFC_BODY, T0

from smsledger.dedup import DedupEngine
from smsledger.headless import _read_payload, main, run_headless
from smsledger.models import Outcome
from smsledger.pipeline import IngestionPipeline


def _task(body=HDFC_BODY):
    return {"originatingAddress": "HDFCBK", "body": body, "timestamp": int(T0.timestamp() * 1000)}


@pytest.fixture()
def headless_pipeline(store, classifier, ledger, tokens, notifier):
    # No recent-body filter: each headless invocation is a fresh process
    return IngestionPipeline(DedupEngine(store), classifier, ledger, store, tokens, notifier=notifier)


def test_submits_transaction(headless_pipeline, ledger):
    result = asyncio.run(run_headless(_task(), headless_pipeline))
    assert result.outcome == Outcome.SUBMITTED
    assert len(ledger.created) == 1


def test_second_invocation_same_sms_skipped(headless_pipeline, classifier, ledger):
    asyncio.run(run_headless(_task(), headless_pipeline))
    result = asyncio.run(run_headless(_task(), headless_pipeline))
    assert result.outcome == Outcome.ALREADY_SEEN
    assert len(classifier.calls) == 1
    assert len(ledger.created) == 1


def test_headless_and_foreground_share_processed_set(store, headless_pipeline, ledger):
    asyncio.run(run_headless(_task(), headless_pipeline))
    # Foreground process, separate pipeline over the same store
    other = IngestionPipeline(DedupEngine(store), headless_pipeline.classifier, ledger, store,
                              headless_pipeline.token_provider)
    result = asyncio.run(run_headless(_task(), other))
    assert result.outcome == Outcome.ALREADY_SEEN


def test_missing_timestamp_is_logged(headless_pipeline, ledger, caplog):
    task = _task()
    del task["timestamp"]
    with caplog.at_level(logging.WARNING, logger="smsledger.models"):
        result = asyncio.run(run_headless(task, headless_pipeline))
    assert result.outcome == Outcome.SUBMITTED
    assert "without a usable timestamp" in caplog.text


def test_timestamp_present_not_logged(headless_pipeline, caplog):
    with caplog.at_level(logging.WARNING, logger="smsledger.models"):
        asyncio.run(run_headless(_task(), headless_pipeline))
    assert "without a usable timestamp" not in caplog.text


def test_read_payload_inline():
    assert _read_payload('{"body": "x"}') == {"body": "x"}


def test_read_payload_stdin(monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO('{"body": "y"}'))
    assert _read_payload("-") == {"body": "y"}


def test_read_payload_rejects_non_object():
    with pytest.raises(ValueError):
        _read_payload("[1, 2]")


def test_main_invalid_payload_exits_2():
    assert main(["not json"]) == 2
