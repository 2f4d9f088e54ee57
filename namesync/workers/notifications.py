from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select

from namesync.config import Settings
from namesync.db import Store
from namesync.mailer import EmailSender, format_eth, render
from namesync.models import EnsName, Notification, User
from namesync.schemas import JobRecord, NotificationJob, NotificationType

log = logging.getLogger(__name__)


def _short(addr: Optional[str]) -> str:
    if not addr:
        return "unknown"
    return f"{addr[:6]}...{addr[-4:]}" if len(addr) > 12 else addr


def compose(n: NotificationJob, name: str) -> Tuple[str, str, List[str]]:
    """(subject, headline, body lines) for one notification."""
    m = n.metadata
    t = n.type
    if t == NotificationType.NEW_LISTING:
        price = format_eth(m.get("price_wei"))
        return (f"{name} listed for {price} ETH", f"{name} was just listed",
                [f"A name on your watchlist is now for sale at {price} ETH."])
    if t == NotificationType.PRICE_CHANGE:
        old, new = format_eth(m.get("old_price_wei")), format_eth(m.get("new_price_wei"))
        return (f"Price change on {name}", f"{name} changed price",
                [f"The listing price moved from {old} ETH to {new} ETH."])
    if t in (NotificationType.SALE, NotificationType.LISTING_SOLD):
        price = format_eth(m.get("price_wei"))
        lines = [f"{name} sold for {price} ETH."]
        if m.get("buyer_address"):
            lines.append(f"Buyer: {_short(m['buyer_address'])}")
        subject = f"{name} sold" if t == NotificationType.SALE else f"Your listing for {name} sold"
        return (subject, subject, lines)
    if t in (NotificationType.NEW_OFFER, NotificationType.OFFER_RECEIVED):
        amount = format_eth(m.get("offer_amount_wei"))
        who = _short(m.get("buyer_address"))
        subject = f"New offer on {name}" if t == NotificationType.NEW_OFFER else f"You received an offer on {name}"
        return (subject, subject, [f"{who} offered {amount} ETH."])
    if t == NotificationType.LISTING_CANCELLED_OWNERSHIP_CHANGE:
        price = format_eth(m.get("price_wei"))
        return (f"Your listing for {name} was cancelled", f"Listing cancelled: {name}",
                [f"Your listing at {price} ETH was cancelled because the name changed hands.",
                 f"Previous owner: {_short(m.get('old_owner'))}",
                 f"New owner: {_short(m.get('new_owner'))}"])
    raise ValueError(f"no message for {t}")


class NotificationWorker:
    def __init__(self, store: Store, sender: EmailSender, settings: Settings):
        self.store = store
        self.sender = sender
        self.s = settings

    def _resolve(self, db, n: NotificationJob) -> Tuple[Optional[User], Optional[str]]:
        user = None
        if n.user_id is not None:
            user = db.get(User, n.user_id)
        elif n.recipient:
            user = db.scalars(select(User).where(func.lower(User.wallet_address) == n.recipient)).first()
        if n.email:
            return user, n.email
        if user is not None and user.email and user.email_verified:
            return user, user.email
        return user, None

    def _context(self, n: NotificationJob, name: str) -> Dict[str, Any]:
        subject, headline, lines = compose(n, name)
        base = self.s.FRONTEND_URL.rstrip("/")
        return {
            "subject": subject,
            "headline": headline,
            "lines": lines,
            "action_url": f"{base}/{name}" if name != "a name" else None,
            "action_label": "View name",
            "tx_hash": n.tx_hash,
            "tx_url": f"https://etherscan.io/tx/{n.tx_hash}" if n.tx_hash else None,
            "unsubscribe_url": f"{base}/settings/notifications",
        }

    def __call__(self, job: JobRecord) -> Dict[str, Any]:
        n = NotificationJob.model_validate(job.payload)
        with self.store.session() as db:
            user, email = self._resolve(db, n)
            ens = db.get(EnsName, n.entity_id) if n.entity_id else None
            name = ens.name if ens else n.metadata.get("name") or "a name"

        if not email:
            log.info("no verified email for %s (%s), skipping", n.recipient or n.user_id, n.type.value,
                     extra={"job_id": job.id})
            return {"status": "skipped", "reason": "no-email"}

        ctx = self._context(n, name)
        result = self.sender.send(email, ctx["subject"], render("notification.html", ctx), render("notification.txt", ctx))

        if user is not None:
            with self.store.transaction() as db:
                db.add(Notification(user_id=user.id, type=n.type.value, ens_name_id=n.entity_id,
                                    details=dict(n.metadata, tx_hash=n.tx_hash)))
        return {"status": result, "email": email, "type": n.type.value}
