from __future__ import annotations
from typing import Any, Dict, List

MONEY_FIELDS = ("price", "highest_offer", "last_sale_price")


def index_settings(ngram_min: int = 2, ngram_max: int = 10) -> Dict[str, Any]:
    if ngram_min < 1 or ngram_max < ngram_min:
        raise ValueError(f"bad ngram range {ngram_min}..{ngram_max}")
    return {
        "max_ngram_diff": ngram_max - ngram_min,
        "analysis": {
            "tokenizer": {
                "ngram_tokenizer": {
                    "type": "ngram",
                    "min_gram": ngram_min,
                    "max_gram": ngram_max,
                    "token_chars": ["letter", "digit"],
                }
            },
            "analyzer": {
                "ngram_analyzer": {
                    "type": "custom",
                    "tokenizer": "ngram_tokenizer",
                    "filter": ["lowercase"],
                }
            },
        },
    }


def index_mappings() -> Dict[str, Any]:
    props: Dict[str, Any] = {
        "entity_id": {"type": "long"},
        "name": {
            "type": "text",
            "fields": {
                "keyword": {"type": "keyword"},
                "ngram": {"type": "text", "analyzer": "ngram_analyzer"},
            },
        },
        "token_id": {"type": "keyword"},
        "owner": {"type": "keyword"},
        "resolver_address": {"type": "keyword"},
        "status": {"type": "keyword"},
        "listing_id": {"type": "long"},
        "seller_address": {"type": "keyword"},
        "listing_created_at": {"type": "date"},
        "listing_expires_at": {"type": "date"},
        "expiry_date": {"type": "date"},
        "registration_date": {"type": "date"},
        "last_transfer_date": {"type": "date"},
        "last_sale_date": {"type": "date"},
        "active_offers_count": {"type": "integer"},
        "character_count": {"type": "integer"},
        "has_numbers": {"type": "boolean"},
        "has_emoji": {"type": "boolean"},
        "tags": {"type": "keyword"},
    }
    # exact base units as a keyword, gwei as an integer for ranges and sorting
    for f in MONEY_FIELDS:
        props[f"{f}_wei"] = {"type": "keyword"}
        props[f"{f}_gwei"] = {"type": "long"}
    return {"dynamic": "strict", "properties": props}


def index_body(ngram_min: int = 2, ngram_max: int = 10) -> Dict[str, Any]:
    return {"settings": index_settings(ngram_min, ngram_max), "mappings": index_mappings()}


def _shape(props: Dict[str, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for name, spec in (props or {}).items():
        out[name] = spec.get("type", "object")
        for sub, subspec in (spec.get("fields") or {}).items():
            out[f"{name}.{sub}"] = subspec.get("type", "object")
    return out


def mapping_differences(actual_mappings: Dict[str, Any], expected_mappings: Dict[str, Any]) -> List[str]:
    """Compare field names and types only; ES echoes back extra parameters we don't care about."""
    actual = _shape(actual_mappings.get("properties", {}))
    expected = _shape(expected_mappings.get("properties", {}))
    diffs = []
    for field, typ in sorted(expected.items()):
        if field not in actual:
            diffs.append(f"missing {field}")
        elif actual[field] != typ:
            diffs.append(f"{field}: {actual[field]} != {typ}")
    for field in sorted(set(actual) - set(expected)):
        diffs.append(f"unexpected {field}")
    return diffs


def _flatten(tree: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    # ES echoes settings back as strings, so leaves are compared in that form
    out: Dict[str, Any] = {}
    for key, value in (tree or {}).items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            out.update(_flatten(value, f"{path}."))
        elif isinstance(value, (list, tuple)):
            out[path] = [str(v) for v in value]
        else:
            out[path] = str(value)
    return out


def settings_differences(actual_index_settings: Dict[str, Any], expected_settings: Dict[str, Any]) -> List[str]:
    """Compare only the keys we set; the index carries plenty of its own (uuid, shards, ...)."""
    actual = _flatten(actual_index_settings)
    diffs = []
    for key, want in sorted(_flatten(expected_settings).items()):
        if key not in actual:
            diffs.append(f"missing setting {key}")
        elif actual[key] != want:
            diffs.append(f"{key}: {actual[key]} != {want}")
    return diffs
