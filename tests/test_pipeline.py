"""Tests for the per-message ingestion state machine and the foreground variant."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import HDFC_BODY, T0, FakeClassifier, FakeSource, bank_reply, make_message

from smsledger.dedup import DedupEngine, KnownTransactions
from smsledger.errors import ClassifierError, StorageError
from smsledger.models import Outcome
from smsledger.pipeline import ForegroundIngestor, IngestionPipeline
from smsledger.storage import LocalStore
from smsledger.sync import SyncFlow


def _run(pipeline, message, **kwargs):
    return asyncio.run(pipeline.handle_raw_message(message, **kwargs))


class TestHappyPath:
    def test_bank_alert_is_submitted(self, pipeline, ledger, store):
        result = _run(pipeline, make_message())

        assert result.outcome == Outcome.SUBMITTED
        assert len(ledger.created) == 1
        payload = ledger.created[0]
        assert payload["amount"] == 500.0
        assert payload["reference_id"] == "12345"
        assert payload["name"] == "Swiggy"
        assert payload["is_auto"] is True
        assert payload["sms_body"] == HDFC_BODY
        # No date in the reply: falls back to received_at
        assert payload["transaction_date"] == T0.isoformat()
        assert store.is_sms_processed(result.fingerprint)
        assert result.transaction["id"] == "txn-1"

    def test_second_invocation_does_nothing(self, pipeline, classifier, ledger, clock):
        _run(pipeline, make_message())
        clock.now += 60

        again = _run(pipeline, make_message())

        assert again.outcome == Outcome.ALREADY_SEEN
        assert len(classifier.calls) == 1
        assert len(ledger.created) == 1

    def test_duplicate_delivery_within_a_second(self, pipeline, classifier, ledger, clock):
        first = _run(pipeline, make_message())
        clock.now += 0.5
        second = _run(pipeline, make_message(at=T0 + timedelta(seconds=1)))

        assert first.outcome == Outcome.SUBMITTED
        assert second.outcome == Outcome.DUPLICATE_DELIVERY
        assert len(classifier.calls) == 1
        assert len(ledger.created) == 1

    def test_check_recent_false_skips_filter(self, pipeline, clock):
        _run(pipeline, make_message())
        result = _run(pipeline, make_message(at=T0 + timedelta(minutes=5)), check_recent=False)
        # Same body, different minute: a distinct physical message
        assert result.outcome == Outcome.SUBMITTED


class TestOfflineQueue:
    def test_no_token_queues(self, pipeline, tokens, ledger, store):
        tokens.token = None
        result = _run(pipeline, make_message())

        assert result.outcome == Outcome.QUEUED
        assert ledger.created == []
        queue = store.get_pending_queue()
        assert len(queue) == 1
        assert queue[0].reference_id == "12345"
        assert store.is_sms_processed(result.fingerprint)

    def test_ledger_failure_queues(self, pipeline, ledger, store):
        ledger.fail_create = True
        result = _run(pipeline, make_message())
        assert result.outcome == Outcome.QUEUED
        assert len(store.get_pending_queue()) == 1

    def test_queue_write_failure_leaves_sms_for_next_sync(self, pipeline, tokens, ledger, store, monkeypatch):
        tokens.token = None
        seen = []
        pipeline.add_listener(seen.append)

        def broken(payload):
            raise StorageError("disk full")

        monkeypatch.setattr(store, "add_to_pending_queue", broken)
        message = make_message()
        result = _run(pipeline, message)

        assert result.outcome == Outcome.QUEUE_FAILED
        assert not store.is_sms_processed(result.fingerprint)
        assert seen == []

        # Storage and login recover; the next manual sync picks the SMS up again
        monkeypatch.undo()
        tokens.token = "tok-123"

        async def no_sleep(seconds):
            return None

        summary = asyncio.run(SyncFlow(pipeline, FakeSource([message]), sleep=no_sleep).run())

        assert summary.created == 1
        assert len(ledger.created) == 1
        assert store.is_sms_processed(result.fingerprint)


class TestNotATransaction:
    @pytest.mark.parametrize("reply", [
        {"is_transaction": False},
        bank_reply(amount=0),
        bank_reply(amount=None),
        bank_reply(amount=-50),
    ])
    def test_amount_gate(self, dedup, ledger, store, tokens, reply):
        clf = FakeClassifier(default=reply)
        pipeline = IngestionPipeline(dedup, clf, ledger, store, tokens)
        result = _run(pipeline, make_message(body="Your OTP is 123456"))

        assert result.outcome == Outcome.NOT_A_TRANSACTION
        assert ledger.created == []
        assert store.get_pending_queue() == []
        assert store.is_sms_processed(result.fingerprint)

    def test_classifier_error_is_terminal(self, dedup, ledger, store, tokens):
        clf = FakeClassifier(error=ClassifierError("timed out"))
        pipeline = IngestionPipeline(dedup, clf, ledger, store, tokens)

        first = _run(pipeline, make_message())
        second = _run(pipeline, make_message())

        assert first.outcome == Outcome.CLASSIFIER_ERROR
        assert second.outcome == Outcome.ALREADY_SEEN
        assert len(clf.calls) == 1

    def test_unexpected_classifier_exception(self, dedup, ledger, store, tokens):
        clf = FakeClassifier(error=KeyError("content"))
        pipeline = IngestionPipeline(dedup, clf, ledger, store, tokens)
        assert _run(pipeline, make_message()).outcome == Outcome.CLASSIFIER_ERROR


class TestAlreadyRecorded:
    def test_reference_in_cache(self, pipeline, ledger, store):
        store.cache_transactions([{"id": "old", "reference_id": "12345", "amount": 1}])
        result = _run(pipeline, make_message())

        assert result.outcome == Outcome.ALREADY_RECORDED
        assert ledger.created == []
        assert store.is_sms_processed(result.fingerprint)

    def test_explicit_known_overrides_cache(self, pipeline, ledger):
        known = KnownTransactions.from_transactions(
            [{"amount": 500, "transaction_date": T0.isoformat()}]
        )
        result = _run(pipeline, make_message(), known=known)
        assert result.outcome == Outcome.ALREADY_RECORDED


class TestAtMostOnce:
    def test_every_path_submits_or_queues_once(self, pipeline, ledger, store, clock):
        for i in range(3):
            clock.now += 10
            _run(pipeline, make_message(at=T0 + timedelta(seconds=i * 5)))
        assert len(ledger.created) + len(store.get_pending_queue()) == 1

    def test_storage_failure_fails_open(self, classifier, ledger, tokens, tmp_path):
        class FlakyStore:
            def __init__(self):
                self.inner = LocalStore(tmp_path)

            def __getattr__(self, name):
                return getattr(self.inner, name)

            def is_sms_processed(self, sms_id):
                raise StorageError("unreadable")

        store = FlakyStore()
        pipeline = IngestionPipeline(DedupEngine(store), classifier, ledger, store, tokens)
        result = _run(pipeline, make_message())
        assert result.outcome == Outcome.SUBMITTED


class TestListeners:
    def test_listener_called_on_submit_and_queue(self, dedup, ledger, store, tokens):
        pipeline = IngestionPipeline(dedup, FakeClassifier(default=bank_reply()), ledger, store, tokens)
        seen = []
        pipeline.add_listener(lambda result: seen.append(result.outcome))

        _run(pipeline, make_message())
        tokens.token = None
        _run(pipeline, make_message(body="Rs.90 debited at Uber. Ref 777"))

        assert seen == [Outcome.SUBMITTED, Outcome.QUEUED]

    def test_async_listener_and_failures_isolated(self, dedup, ledger, store, tokens):
        clf = FakeClassifier(default=bank_reply())
        pipeline = IngestionPipeline(dedup, clf, ledger, store, tokens)
        seen = []

        def boom(result):
            raise RuntimeError("listener bug")

        async def record(result):
            seen.append(result.outcome)

        pipeline.add_listener(boom)
        pipeline.add_listener(record)
        result = _run(pipeline, make_message())

        assert result.outcome == Outcome.SUBMITTED
        assert seen == [Outcome.SUBMITTED]

    def test_unsubscribe(self, pipeline):
        seen = []
        unsubscribe = pipeline.add_listener(seen.append)
        unsubscribe()
        _run(pipeline, make_message())
        assert seen == []

    def test_not_called_for_skips(self, pipeline, store):
        store.cache_transactions([{"reference_id": "12345"}])
        seen = []
        pipeline.add_listener(seen.append)
        _run(pipeline, make_message())
        assert seen == []


class TestCategoryNotification:
    def _pipeline(self, dedup, ledger, store, tokens, notifier, reply):
        return IngestionPipeline(dedup, FakeClassifier(default=reply), ledger, store, tokens, notifier=notifier)

    def test_low_confidence_asks_for_category(self, dedup, ledger, store, tokens, notifier):
        pipeline = self._pipeline(dedup, ledger, store, tokens, notifier, bank_reply(category=None))
        _run(pipeline, make_message())
        assert notifier.requests == [("txn-1", "Swiggy", Decimal("500.00"))]

    def test_confident_category_no_prompt(self, dedup, ledger, store, tokens, notifier):
        pipeline = self._pipeline(dedup, ledger, store, tokens, notifier, bank_reply(category="Food"))
        _run(pipeline, make_message())
        assert notifier.requests == []

    def test_queued_transaction_no_prompt(self, dedup, ledger, store, tokens, notifier):
        tokens.token = None
        pipeline = self._pipeline(dedup, ledger, store, tokens, notifier, bank_reply(category=None))
        _run(pipeline, make_message())
        assert notifier.requests == []


class TestForegroundIngestor:
    def _event(self, body=HDFC_BODY):
        return {
            "originatingAddress": "HDFCBK",
            "body": body,
            "timestamp": int(T0.timestamp() * 1000),
        }

    def test_submitted_signal_and_settled_row(self, pipeline):
        fg = ForegroundIngestor(pipeline)
        out = asyncio.run(fg.on_sms_event(self._event()))

        assert out["outcome"] == "submitted"
        assert out["transaction_id"] == "txn-1"
        assert out["signal"]["level"] == "success"
        assert "Swiggy" in out["signal"]["text"]
        assert fg.displayed[0]["id"] == "txn-1"
        assert "pending" not in fg.displayed[0]

    def test_queued_keeps_optimistic_row(self, pipeline, tokens):
        tokens.token = None
        fg = ForegroundIngestor(pipeline)
        out = asyncio.run(fg.on_sms_event(self._event()))

        assert out["outcome"] == "queued"
        assert out["signal"]["level"] == "info"
        assert fg.displayed[0]["pending"] is True

    def test_unsaved_transaction_signals_error(self, pipeline, tokens, store, monkeypatch):
        tokens.token = None

        def broken(payload):
            raise StorageError("disk full")

        monkeypatch.setattr(store, "add_to_pending_queue", broken)
        fg = ForegroundIngestor(pipeline)
        out = asyncio.run(fg.on_sms_event(self._event()))

        assert out["outcome"] == "queue_failed"
        assert out["signal"]["level"] == "error"
        assert not store.is_sms_processed(out["fingerprint"])

    def test_duplicate_has_no_signal(self, pipeline):
        fg = ForegroundIngestor(pipeline)
        asyncio.run(fg.on_sms_event(self._event()))
        out = asyncio.run(fg.on_sms_event(self._event()))
        assert out["outcome"] == "duplicate_delivery"
        assert out["signal"] is None
        assert len(fg.signals) == 1

    def test_load_displayed_from_cache(self, pipeline, store):
        store.cache_transactions([{"id": str(i)} for i in range(150)])
        fg = ForegroundIngestor(pipeline)
        fg.load_displayed()
        assert len(fg.displayed) == 100
