import copy
import hashlib
from datetime import datetime, timedelta

import pytest
from elasticsearch import ConnectionError as ESConnectionError

from namesync.config import Settings
from namesync.db import Store
from namesync.models import EnsName, Listing, Offer, User, WatchlistEntry
from namesync.service import Runtime


class FakeClock:
    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


def _as_strings(value):
    # settings come back from ES with every leaf as a string
    if isinstance(value, dict):
        return {k: _as_strings(v) for k, v in value.items()}
    if isinstance(value, list):
        return [str(v) for v in value]
    return str(value)


class _Indices:
    def __init__(self, es):
        self.es = es

    def exists(self, index):
        self.es._check()
        return index in self.es.indexes

    def create(self, index, settings=None, mappings=None):
        self.es._check()
        self.es.indexes[index] = {"settings": copy.deepcopy(settings), "mappings": copy.deepcopy(mappings), "docs": {}}
        return {"acknowledged": True, "index": index}

    def delete(self, index):
        self.es._check()
        if self.es.indexes.pop(index, None) is None:
            return {"status": 404}
        return {"acknowledged": True}

    def get_mapping(self, index):
        self.es._check()
        return {index: {"mappings": copy.deepcopy(self.es.indexes[index]["mappings"])}}

    def get_settings(self, index):
        self.es._check()
        live = {"uuid": "fake-uuid", "number_of_shards": "1"}
        live.update(_as_strings(self.es.indexes[index]["settings"] or {}))
        return {index: {"settings": {"index": live}}}

    def refresh(self, index=None):
        return {}


class FakeElasticsearch:
    """In-memory stand-in for the handful of client calls the synchronizer makes."""

    def __init__(self):
        self.indexes = {}
        self.down = False
        self.indices = _Indices(self)
        self.calls = []

    def _check(self):
        if self.down:
            raise ESConnectionError("connection refused")

    def _docs(self, index):
        return self.indexes[index]["docs"]

    def _validate(self, index, doc):
        props = self.indexes[index]["mappings"]["properties"]
        unknown = set(doc) - set(props)
        if unknown:
            raise ValueError(f"strict mapping rejects {sorted(unknown)}")

    def options(self, **kwargs):
        return self

    def index(self, index, id, document):
        self._check()
        self.calls.append(("index", id))
        self._validate(index, document)
        self._docs(index)[id] = copy.deepcopy(document)
        return {"_id": id, "result": "updated"}

    def delete(self, index, id):
        self._check()
        self.calls.append(("delete", id))
        if self._docs(index).pop(id, None) is None:
            return {"_id": id, "result": "not_found"}
        return {"_id": id, "result": "deleted"}

    def get(self, index, id):
        self._check()
        doc = self._docs(index).get(id)
        return {"_id": id, "found": doc is not None, "_source": copy.deepcopy(doc)}

    def mget(self, index, ids):
        self._check()
        return {"docs": [self.get(index, i) for i in ids]}

    def count(self, index):
        self._check()
        return {"count": len(self._docs(index))}

    def bulk(self, operations):
        self._check()
        items = []
        it = iter(operations)
        for op in it:
            (action, meta), = op.items()
            docs = self._docs(meta["_index"])
            if action == "index":
                doc = next(it)
                self._validate(meta["_index"], doc)
                docs[meta["_id"]] = copy.deepcopy(doc)
                items.append({"index": {"_id": meta["_id"], "status": 200}})
            elif action == "delete":
                found = docs.pop(meta["_id"], None) is not None
                items.append({"delete": {"_id": meta["_id"], "status": 200 if found else 404}})
        return {"errors": False, "items": items}

    def search(self, index, size=10, sort=None, search_after=None, source=True, query=None):
        self._check()
        ordered = sorted(self._docs(index).items(), key=lambda kv: kv[1]["entity_id"])
        if search_after:
            ordered = [kv for kv in ordered if kv[1]["entity_id"] > search_after[0]]
        hits = [{"_id": k, "sort": [v["entity_id"]]} for k, v in ordered[:size]]
        return {"hits": {"hits": hits}}

    def ping(self):
        return not self.down

    def close(self):
        pass

    def doc(self, entity_id, index="ens_names"):
        return self.indexes[index]["docs"].get(str(entity_id))


class RecordingSender:
    def __init__(self):
        self.sent = []

    def send(self, to_address, subject, html_body, text_body=None):
        self.sent.append({"to": to_address, "subject": subject, "html": html_body, "text": text_body})
        return "sent"


class FakeMetadata:
    def __init__(self, data=None):
        self.data = data or {}
        self.requests = []

    def fetch(self, token_id):
        self.requests.append(token_id)
        return self.data

    def close(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.sqlite3'}",
        ELASTICSEARCH_INDEX="ens_names",
        BULK_BATCH_SIZE=2,
        JOB_RETRY_LIMIT=3,
        JOB_RETRY_DELAY_SECONDS=10,
        JOB_RETRY_BACKOFF=True,
        JOB_POLL_SECONDS=0.01,
        LISTENER_POLL_SECONDS=0.01,
        LISTENER_BACKOFF_BASE=0.001,
        LISTENER_BACKOFF_MAX=0.01,
        LISTENER_STARTUP_ATTEMPTS=3,
        LISTENER_MAX_PENDING=5,
        EMAIL_ENABLED=False,
        FRONTEND_URL="https://grails.test",
        WORKER_POOLS={},
        ANALYTICS_VIEWS=["trending_views_24h", "trending_sales_7d"],
    )


@pytest.fixture
def store(settings):
    s = Store(settings.DATABASE_URL)
    s.init_db()
    yield s
    s.close()


@pytest.fixture
def es():
    return FakeElasticsearch()


@pytest.fixture
def rt(settings, store, es, clock):
    runtime = Runtime(settings, store=store, es=es, sender=RecordingSender(), metadata=FakeMetadata(), clock=clock)
    runtime.sync.ensure_schema()
    return runtime


def _token_id(name):
    return str(int(hashlib.sha256(name.encode("utf-8")).hexdigest()[:15], 16))


def add_name(store, name, owner="0x" + "a" * 40, **kw):
    with store.transaction() as db:
        row = EnsName(name=name, token_id=kw.pop("token_id", _token_id(name)), owner_address=owner, **kw)
        db.add(row)
        db.flush()
        return row.id


def add_listing(store, ens_name_id, price_wei="1000000000000000000", seller=None, status="active", **kw):
    with store.transaction() as db:
        if seller is None:
            seller = db.get(EnsName, ens_name_id).owner_address
        row = Listing(ens_name_id=ens_name_id, seller_address=seller, price_wei=price_wei, status=status, **kw)
        db.add(row)
        db.flush()
        return row.id


def add_offer(store, ens_name_id, amount_wei, buyer="0x" + "b" * 40, status="pending", **kw):
    with store.transaction() as db:
        row = Offer(ens_name_id=ens_name_id, buyer_address=buyer, offer_amount_wei=amount_wei, status=status, **kw)
        db.add(row)
        db.flush()
        return row.id


def add_user(store, wallet, email=None, verified=True):
    with store.transaction() as db:
        row = User(wallet_address=wallet, email=email, email_verified=verified)
        db.add(row)
        db.flush()
        return row.id


def watch(store, user_id, ens_name_id, **flags):
    with store.transaction() as db:
        db.add(WatchlistEntry(user_id=user_id, ens_name_id=ens_name_id, **flags))
