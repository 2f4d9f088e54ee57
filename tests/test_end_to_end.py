from conftest import add_listing, add_name
from namesync.jobs import names
from namesync.jobs.worker import WorkerPool
from namesync.models import Listing
from namesync.schemas import ChangeEvent
from namesync.workers.ownership import OwnershipWorker
from namesync.workers.reconcile import ReconcileWorker


def _change(rt, table, operation, data, old_data=None):
    return rt.processor.process(ChangeEvent(table=table, operation=operation, data=data, old_data=old_data))


def test_list_then_transfer(rt, store, es):
    name_id = add_name(store, "alice.eth", owner="0xA")
    _change(rt, "ens_names", "INSERT", {"id": name_id})
    doc = es.doc(name_id)
    assert doc["owner"] == "0xa"
    assert doc["price_wei"] is None and doc["status"] == "unlisted"

    listing_id = add_listing(store, name_id, price_wei="1000000000000000000")
    _change(rt, "listings", "INSERT", {"id": listing_id, "ens_name_id": name_id, "status": "active",
                                       "price_wei": "1000000000000000000", "seller_address": "0xA"})
    with store.session() as db:
        stored_price = db.get(Listing, listing_id).price_wei
    assert es.doc(name_id)["price_wei"] == stored_price == "1000000000000000000"
    assert es.doc(name_id)["price_gwei"] == 1000000000

    rt.queue.enqueue(names.UPDATE_OWNERSHIP, {"entity_id": name_id, "new_owner": "0xB", "tx_hash": "0xt1"})
    pool = WorkerPool(rt.queue, names.UPDATE_OWNERSHIP, OwnershipWorker(store, rt.queue, rt.clock))
    assert pool.run_once() == 1

    # the triggers fire for the owner change and the cancelled listing
    _change(rt, "ens_names", "UPDATE", {"id": name_id}, {"id": name_id})
    _change(rt, "listings", "UPDATE",
            {"id": listing_id, "ens_name_id": name_id, "status": "cancelled", "price_wei": "1000000000000000000"},
            {"id": listing_id, "ens_name_id": name_id, "status": "active", "price_wei": "1000000000000000000"})

    with store.session() as db:
        assert db.get(Listing, listing_id).status == "cancelled"
    doc = es.doc(name_id)
    assert doc["owner"] == "0xb"
    assert doc["price_wei"] is None and doc["listing_id"] is None

    [job] = rt.queue.find(names.SEND_NOTIFICATION)
    assert job.payload["recipient"] == "0xa"
    assert job.payload["metadata"]["listing_id"] == listing_id
    assert job.payload["type"] == "listing-cancelled-ownership-change"
    [done] = rt.queue.find(names.UPDATE_OWNERSHIP)
    assert done.state == "completed"
    assert done.output["cancelled_listings"] == [listing_id]


def test_reconcile_repairs_missed_events(rt, store, es):
    name_id = add_name(store, "missed.eth", owner="0xA")
    add_listing(store, name_id, price_wei="7")
    # no change events were delivered
    assert es.doc(name_id) is None

    rt.queue.enqueue(names.RECONCILE_INDEX, {"mode": "full"})
    pool = WorkerPool(rt.queue, names.RECONCILE_INDEX, ReconcileWorker(rt.sync))
    pool.run_once()

    assert es.doc(name_id)["price_wei"] == "7"
