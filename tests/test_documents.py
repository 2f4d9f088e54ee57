from datetime import datetime

import pytest

from namesync.errors import PermanentError
from namesync.models import EnsName, Listing, Offer
from namesync.search.documents import build_document, name_tags, parse_wei, to_gwei
from namesync.search.schema import index_body, index_mappings, mapping_differences


def _name(**kw):
    base = dict(id=7, name="abc.eth", token_id="123", owner_address="0xABCDEF")
    base.update(kw)
    return EnsName(**base)


def test_tags_and_character_count():
    assert name_tags("abc") == ["short", "alphabetic"]
    assert name_tags("1234") == ["4-letter", "numeric"]
    assert name_tags("hello") == ["5-letter", "alphabetic"]
    assert "emoji" in name_tags("🔥🔥🔥")

    doc = build_document(_name(name="a1b2.eth"), [], [])
    assert doc["character_count"] == 4
    assert doc["has_numbers"] is True
    assert doc["has_emoji"] is False
    assert doc["status"] == "unlisted"
    assert doc["price_wei"] is None and doc["price_gwei"] is None
    assert doc["owner"] == "0xabcdef"


def test_money_is_exact_integer_not_float():
    wei = "123456789123456789123"
    assert parse_wei(wei) == 123456789123456789123
    assert to_gwei(parse_wei(wei)) == 123456789123
    listing = Listing(id=1, ens_name_id=7, seller_address="0xS", price_wei=wei, status="active",
                      created_at=datetime(2026, 1, 1))
    doc = build_document(_name(), [listing], [])
    assert doc["price_wei"] == wei
    assert doc["price_gwei"] == 123456789123


@pytest.mark.parametrize("bad", ["1.5", "-1", "1e18", "0x10", "abc"])
def test_malformed_amount_is_permanent(bad):
    with pytest.raises(PermanentError):
        parse_wei(bad)


def test_newest_active_listing_wins():
    old = Listing(id=1, ens_name_id=7, seller_address="0xS", price_wei="5", status="active",
                  created_at=datetime(2026, 1, 1))
    new = Listing(id=2, ens_name_id=7, seller_address="0xS", price_wei="9", status="active",
                  created_at=datetime(2026, 1, 2))
    doc = build_document(_name(), [new, old], [])
    assert doc["listing_id"] == 2
    assert doc["price_wei"] == "9"


def test_highest_offer_compares_numerically():
    offers = [
        Offer(id=1, ens_name_id=7, buyer_address="0xB", offer_amount_wei="9", status="pending"),
        Offer(id=2, ens_name_id=7, buyer_address="0xB", offer_amount_wei="10000000000", status="pending"),
        Offer(id=3, ens_name_id=7, buyer_address="0xB", offer_amount_wei="99999999999999", status="expired"),
    ]
    doc = build_document(_name(), [], offers)
    assert doc["active_offers_count"] == 2
    assert doc["highest_offer_wei"] == "10000000000"
    assert doc["highest_offer_gwei"] == 10


def test_mapping_comparison():
    expected = index_mappings()
    assert mapping_differences(expected, expected) == []

    actual = index_mappings()
    actual["properties"]["price_gwei"] = {"type": "scaled_float", "scaling_factor": 1e18}
    del actual["properties"]["tags"]
    actual["properties"]["extra"] = {"type": "keyword"}
    diffs = mapping_differences(actual, expected)
    assert "price_gwei: scaled_float != long" in diffs
    assert "missing tags" in diffs
    assert "unexpected extra" in diffs


def test_ngram_range_is_configurable():
    body = index_body(3, 6)
    tok = body["settings"]["analysis"]["tokenizer"]["ngram_tokenizer"]
    assert (tok["min_gram"], tok["max_gram"]) == (3, 6)
    assert body["settings"]["max_ngram_diff"] == 3
    with pytest.raises(ValueError):
        index_body(5, 2)
