"""
Projection of a name, its newest active listing and its pending offers into
one search document. Everything here is a pure function of store rows so the
same row state always yields the same document.
"""
from __future__ import annotations
import re
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from namesync.errors import PermanentError
from namesync.models import EnsName, Listing, Offer

GWEI = 10 ** 9
LONG_MAX = 2 ** 63 - 1

_DIGITS = re.compile(r"^[0-9]{1,78}$")
_EMOJI = re.compile(
    "[\U0001F000-\U0001FAFF\U00002600-\U000027BF\U00002300-\U000023FF\U00002B00-\U00002BFF\U0000FE0F\U0000200D]"
)


def parse_wei(value: Any, field: str = "amount") -> Optional[int]:
    if value is None or value == "":
        return None
    s = str(value).strip()
    if not _DIGITS.match(s):
        raise PermanentError(f"malformed {field}: {value!r}")
    return int(s)


def to_gwei(wei: Optional[int]) -> Optional[int]:
    if wei is None:
        return None
    return min(wei // GWEI, LONG_MAX)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def label_of(name: str) -> str:
    return name[:-4] if name.endswith(".eth") else name


def name_tags(label: str) -> List[str]:
    tags = []
    n = len(label)
    if n <= 3:
        tags.append("short")
    elif n == 4:
        tags.append("4-letter")
    elif n == 5:
        tags.append("5-letter")
    if label.isdigit():
        tags.append("numeric")
    elif label.isascii() and label.isalpha():
        tags.append("alphabetic")
    if _EMOJI.search(label):
        tags.append("emoji")
    return tags


def pick_active_listing(listings: Sequence[Listing]) -> Optional[Listing]:
    active = [l for l in listings if l.status == "active"]
    if not active:
        return None
    return max(active, key=lambda l: (l.created_at, l.id))


def build_document(name: EnsName, listings: Sequence[Listing], offers: Sequence[Offer]) -> Dict[str, Any]:
    label = label_of(name.name)
    listing = pick_active_listing(listings)

    price_wei = parse_wei(listing.price_wei, "price_wei") if listing else None
    pending = [parse_wei(o.offer_amount_wei, "offer_amount_wei") for o in offers if o.status == "pending"]
    pending = [p for p in pending if p is not None]
    highest = max(pending) if pending else None
    last_sale = parse_wei(name.last_sale_price_wei, "last_sale_price_wei")

    return {
        "entity_id": name.id,
        "name": name.name,
        "token_id": name.token_id,
        "owner": (name.owner_address or "").lower() or None,
        "resolver_address": name.resolver_address,
        "status": listing.status if listing else "unlisted",
        "listing_id": listing.id if listing else None,
        "seller_address": listing.seller_address.lower() if listing else None,
        "listing_created_at": _iso(listing.created_at) if listing else None,
        "listing_expires_at": _iso(listing.expires_at) if listing else None,
        "price_wei": str(price_wei) if price_wei is not None else None,
        "price_gwei": to_gwei(price_wei),
        "expiry_date": _iso(name.expiry_date),
        "registration_date": _iso(name.registration_date),
        "last_transfer_date": _iso(name.last_transfer_date),
        "last_sale_price_wei": str(last_sale) if last_sale is not None else None,
        "last_sale_price_gwei": to_gwei(last_sale),
        "last_sale_date": _iso(name.last_sale_date),
        "active_offers_count": len(pending),
        "highest_offer_wei": str(highest) if highest is not None else None,
        "highest_offer_gwei": to_gwei(highest),
        "character_count": len(label),
        "has_numbers": any(c.isdigit() for c in label),
        "has_emoji": bool(_EMOJI.search(label)),
        "tags": name_tags(label),
    }


def load_document(db: Session, entity_id: int) -> Optional[Dict[str, Any]]:
    name = db.get(EnsName, entity_id)
    if name is None:
        return None
    listings = db.scalars(
        select(Listing).where(Listing.ens_name_id == entity_id, Listing.status == "active")
    ).all()
    offers = db.scalars(
        select(Offer).where(Offer.ens_name_id == entity_id, Offer.status == "pending")
    ).all()
    return build_document(name, listings, offers)


def iter_name_batches(db: Session, batch_size: int) -> Iterator[List[EnsName]]:
    last_id = 0
    while True:
        batch = db.scalars(
            select(EnsName).where(EnsName.id > last_id).order_by(EnsName.id).limit(batch_size)
        ).all()
        if not batch:
            return
        yield list(batch)
        last_id = batch[-1].id


def build_documents(db: Session, names: Sequence[EnsName]) -> Dict[int, Dict[str, Any]]:
    """Documents for a batch of names with two extra queries instead of two per name."""
    ids = [n.id for n in names]
    listings: Dict[int, List[Listing]] = {i: [] for i in ids}
    offers: Dict[int, List[Offer]] = {i: [] for i in ids}
    for l in db.scalars(select(Listing).where(Listing.ens_name_id.in_(ids), Listing.status == "active")):
        listings[l.ens_name_id].append(l)
    for o in db.scalars(select(Offer).where(Offer.ens_name_id.in_(ids), Offer.status == "pending")):
        offers[o.ens_name_id].append(o)
    return {n.id: build_document(n, listings[n.id], offers[n.id]) for n in names}
