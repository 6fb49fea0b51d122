"""
Shared pytest fixtures: a tmp-dir JSON store plus in-memory fakes for the
classifier, ledger API, token provider, notifier and message source.
"""
import os

os.environ.setdefault("LEDGER_API_BASE", "http://ledger.test/api")

from datetime import datetime, timedelta, timezone

import pytest

from smsledger.dedup import DedupEngine, RecentBodyFilter
from smsledger.errors import LedgerApiError
from smsledger.models import RawMessage
from smsledger.pipeline import IngestionPipeline
from smsledger.storage import LocalStore
from smsledger.tools.classifier import Classifier, candidate_from_dict
from smsledger.tools.notify import Notifier
from smsledger.tools.sms_backup import MessageSource

T0 = datetime(2024, 3, 15, 10, 30, 0, tzinfo=timezone.utc)

HDFC_BODY = "Rs.500 debited from a/c XX1234 on 15-03-24 to Swiggy. Ref 12345. Not you? Call 18002586161"


class FakeClassifier(Classifier):
    """Returns a canned dict per body (or a default), counting calls."""

    def __init__(self, replies: dict | None = None, default=None, error: Exception | None = None):
        self.replies = replies or {}
        self.default = default
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def classify(self, text, sender):
        self.calls.append((text, sender))
        if self.error:
            raise self.error
        reply = self.replies.get(text, self.default)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(text)
        return candidate_from_dict(reply, text)


class FakeLedger:
    def __init__(self, transactions: list | None = None):
        self.transactions = list(transactions or [])
        self.created: list[dict] = []
        self.updated: list[tuple] = []
        self.fail_create = False
        self.fail_list = False
        self.list_calls = 0
        self._next_id = 1

    async def create_transaction(self, token, payload):
        if self.fail_create:
            raise LedgerApiError("backend down", status_code=503)
        txn = {**payload, "id": f"txn-{self._next_id}"}
        self._next_id += 1
        self.created.append(payload)
        return txn

    async def list_transactions(self, token):
        self.list_calls += 1
        if self.fail_list:
            raise LedgerApiError("backend down", status_code=503)
        return list(self.transactions)

    async def update_transaction(self, token, transaction_id, fields):
        self.updated.append((transaction_id, fields))
        return {"id": transaction_id, **fields}


class FakeTokenProvider:
    def __init__(self, token="tok-123"):
        self.token = token

    async def get_token(self):
        return self.token

    def set_token(self, token):
        self.token = token


class FakeNotifier(Notifier):
    def __init__(self):
        self.requests: list[tuple] = []

    async def request_category(self, transaction_id, name, amount):
        self.requests.append((transaction_id, name, amount))


class FakeSource(MessageSource):
    def __init__(self, messages: list[RawMessage]):
        self.messages = messages
        self.calls: list[int] = []

    async def get_recent_candidates(self, days_back):
        self.calls.append(days_back)
        return list(self.messages)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def make_message(body=HDFC_BODY, sender="HDFCBK", at=T0, external_id=""):
    return RawMessage(sender=sender, body=body, received_at=at, external_id=external_id)


def bank_reply(amount=500, ref="12345", name="Swiggy", category="Food", type_="debit", date=None):
    return {
        "is_transaction": True,
        "amount": amount,
        "name": name,
        "category": category,
        "type": type_,
        "reference_id": ref,
        "transaction_date": date,
        "source": "HDFC Bank",
        "payment_method": "UPI",
    }


@pytest.fixture()
def store(tmp_path):
    return LocalStore(tmp_path / "data", processed_capacity=500)


@pytest.fixture()
def dedup(store):
    return DedupEngine(store)


@pytest.fixture()
def classifier():
    return FakeClassifier(replies={HDFC_BODY: bank_reply()})


@pytest.fixture()
def ledger():
    return FakeLedger()


@pytest.fixture()
def tokens():
    return FakeTokenProvider()


@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def pipeline(dedup, classifier, ledger, store, tokens, clock):
    return IngestionPipeline(
        dedup=dedup,
        classifier=classifier,
        ledger=ledger,
        store=store,
        token_provider=tokens,
        recent_filter=RecentBodyFilter(clock=clock),
    )


@pytest.fixture()
def bulk_messages():
    """40 distinct bank alerts, one minute apart, each with its own reference."""
    msgs = []
    for i in range(40):
        body = f"Rs.{100 + i} debited from a/c XX1234 at Shop{i}. Ref R{i:04d}"
        msgs.append(make_message(body=body, at=T0 + timedelta(minutes=2 * i)))
    return msgs


def bulk_classifier() -> FakeClassifier:
    def _reply(text):
        # "Rs.<amt> debited ... Shop<i>. Ref R<nnnn>"
        amount = text.split("Rs.")[1].split(" ")[0]
        ref = text.rsplit("Ref ", 1)[1]
        return bank_reply(amount=amount, ref=ref, name=f"Shop{ref}")
    return FakeClassifier(default=_reply)
