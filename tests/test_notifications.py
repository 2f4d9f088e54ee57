from sqlalchemy import select

from conftest import add_name, add_user
from namesync.mailer import EmailSender, format_eth, render
from namesync.models import Notification
from namesync.schemas import JobRecord
from namesync.workers.notifications import NotificationWorker

SELLER = "0x" + "5" * 40


def _job(payload):
    return JobRecord(id="n-1", queue="send-notification", payload=payload, state="active")


def test_format_eth():
    assert format_eth("1000000000000000000") == "1"
    assert format_eth("1500000000000000000") == "1.5"
    assert format_eth("1") == "0.000000000000000001"
    assert format_eth(None) == "0"


def test_cancellation_notice_goes_to_verified_seller(rt, store):
    user_id = add_user(store, SELLER, email="seller@example.com")
    name_id = add_name(store, "alice.eth")
    worker = NotificationWorker(store, rt.sender, rt.settings)

    out = worker(_job({
        "type": "listing-cancelled-ownership-change",
        "recipient": SELLER,
        "entity_id": name_id,
        "metadata": {"listing_id": 3, "price_wei": "2000000000000000000", "old_owner": SELLER, "new_owner": "0xb"},
        "tx_hash": "0xabc",
    }))

    assert out == {"status": "sent", "email": "seller@example.com", "type": "listing-cancelled-ownership-change"}
    [mail] = rt.sender.sent
    assert mail["to"] == "seller@example.com"
    assert mail["subject"] == "Your listing for alice.eth was cancelled"
    assert "2 ETH" in mail["text"]
    assert "https://grails.test/settings/notifications" in mail["html"]
    assert "https://etherscan.io/tx/0xabc" in mail["text"]

    with store.session() as db:
        [row] = db.scalars(select(Notification)).all()
    assert row.user_id == user_id and row.ens_name_id == name_id
    assert row.details["listing_id"] == 3


def test_unverified_user_is_skipped(rt, store):
    add_user(store, SELLER, email="seller@example.com", verified=False)
    worker = NotificationWorker(store, rt.sender, rt.settings)
    out = worker(_job({"type": "sale", "recipient": SELLER, "metadata": {"price_wei": "1"}}))
    assert out == {"status": "skipped", "reason": "no-email"}
    assert rt.sender.sent == []


def test_watcher_by_user_id(rt, store):
    user_id = add_user(store, "0x" + "7" * 40, email="watcher@example.com")
    name_id = add_name(store, "watched.eth")
    worker = NotificationWorker(store, rt.sender, rt.settings)
    worker(_job({"type": "new-offer", "user_id": user_id, "entity_id": name_id,
                 "metadata": {"offer_amount_wei": "250000000000000000", "buyer_address": "0x" + "b" * 40}}))
    [mail] = rt.sender.sent
    assert mail["subject"] == "New offer on watched.eth"
    assert "0.25 ETH" in mail["text"]


def test_html_is_escaped():
    html = render("notification.html", {
        "subject": "s", "headline": "<script>x</script>", "lines": [], "action_url": None,
        "tx_url": None, "unsubscribe_url": "u",
    })
    assert "<script>" not in html and "&lt;script&gt;" in html


def test_sender_dry_run_without_smtp(settings):
    sender = EmailSender(settings.model_copy(update={"EMAIL_ENABLED": True, "SMTP_HOST": ""}))
    assert not sender.enabled
    assert sender.send("a@example.com", "hi", "<p>hi</p>") == "dry-run"
