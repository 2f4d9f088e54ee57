import httpx
import pytest

from conftest import FakeMetadata, add_listing, add_name
from namesync.errors import PermanentError, TransientError
from namesync.jobs import names
from namesync.metadata_client import MetadataClient
from namesync.models import EnsName
from namesync.schemas import JobRecord
from namesync.workers.metadata import DailyMetadataFanout, MetadataSyncWorker


def _client(settings, handler):
    return MetadataClient(settings, client=httpx.Client(transport=httpx.MockTransport(handler)))


def _job(queue, payload):
    return JobRecord(id="m-1", queue=queue, payload=payload, state="active")


def test_client_builds_token_url(settings):
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"name": "alice.eth", "image": "https://img/alice.png"})

    data = _client(settings, handler).fetch("123")
    assert data["image"] == "https://img/alice.png"
    assert seen == [f"{settings.METADATA_URL}/{settings.METADATA_CONTRACT}/123"]


@pytest.mark.parametrize("status,exc", [(404, PermanentError), (429, TransientError), (502, TransientError)])
def test_client_classifies_errors(settings, status, exc):
    client = _client(settings, lambda request: httpx.Response(status))
    with pytest.raises(exc):
        client.fetch("1")


def test_client_transport_error_is_transient(settings):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientError):
        _client(settings, handler).fetch("1")


def test_sync_stores_known_keys_and_resolver(store):
    name_id = add_name(store, "meta.eth")
    fake = FakeMetadata({"name": "meta.eth", "description": "d", "image": "i", "resolver": "0xABC",
                         "is_normalized": True})
    worker = MetadataSyncWorker(store, fake)

    assert worker(_job(names.SYNC_ENTITY_METADATA, {"entity_id": name_id})) == {"status": "updated"}
    with store.session() as db:
        name = db.get(EnsName, name_id)
        assert name.ens_metadata == {"name": "meta.eth", "description": "d", "image": "i"}
        assert name.resolver_address == "0xabc"
        token_id = name.token_id
    assert fake.requests == [token_id]

    assert worker(_job(names.SYNC_ENTITY_METADATA, {"entity_id": name_id})) == {"status": "unchanged"}


def test_sync_of_missing_name(store):
    fake = FakeMetadata()
    assert MetadataSyncWorker(store, fake)(_job(names.SYNC_ENTITY_METADATA, {"entity_id": 404})) == {"status": "missing"}
    assert fake.requests == []


def test_daily_fanout_queues_listed_names_once(rt, store):
    listed = add_name(store, "listed.eth")
    add_listing(store, listed)
    add_listing(store, listed)
    add_name(store, "idle.eth")
    fanout = DailyMetadataFanout(store, rt.queue)

    assert fanout(_job(names.SCHEDULE_DAILY_METADATA_SYNC, {})) == {"names": 1, "queued": 1}
    [job] = rt.queue.find(names.SYNC_ENTITY_METADATA)
    assert job.payload == {"entity_id": listed}

    # the previous sync is still pending
    assert fanout(_job(names.SCHEDULE_DAILY_METADATA_SYNC, {}))["queued"] == 0
