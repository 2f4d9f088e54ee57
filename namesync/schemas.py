from __future__ import annotations
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator


class ChangeOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    table: str
    operation: ChangeOperation
    data: Optional[Dict[str, Any]] = None
    old_data: Optional[Dict[str, Any]] = None
    truncated: bool = False

    def field(self, key: str) -> Any:
        """Value from the new row image, falling back to the old one."""
        for row in (self.data, self.old_data):
            if row and row.get(key) is not None:
                return row[key]
        return None

    @property
    def row_id(self) -> Optional[int]:
        v = self.field("id")
        return int(v) if v is not None else None


class NotificationType(str, Enum):
    NEW_LISTING = "new-listing"
    PRICE_CHANGE = "price-change"
    SALE = "sale"
    NEW_OFFER = "new-offer"
    LISTING_CANCELLED_OWNERSHIP_CHANGE = "listing-cancelled-ownership-change"
    OFFER_RECEIVED = "offer-received"
    LISTING_SOLD = "listing-sold"


_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{1,40}$")


def _lower_address(v: Optional[str]) -> Optional[str]:
    return v.lower() if isinstance(v, str) else v


class OwnershipUpdate(BaseModel):
    entity_id: int
    new_owner: str
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None

    @field_validator("new_owner")
    @classmethod
    def check_address(cls, v: str) -> str:
        if not _ADDRESS.match(v):
            raise ValueError("new_owner must be a 0x-prefixed hex address")
        return v.lower()


class NotificationJob(BaseModel):
    type: NotificationType
    recipient: Optional[str] = None
    user_id: Optional[int] = None
    email: Optional[str] = None
    entity_id: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tx_hash: Optional[str] = None

    @field_validator("recipient")
    @classmethod
    def lower_recipient(cls, v: Optional[str]) -> Optional[str]:
        return _lower_address(v)


class ExpireOrder(BaseModel):
    order_type: str
    order_id: int

    @field_validator("order_type")
    @classmethod
    def check_order_type(cls, v: str) -> str:
        if v not in ("listing", "offer"):
            raise ValueError("order_type must be 'listing' or 'offer'")
        return v


class SyncMetadata(BaseModel):
    entity_id: int


class RefreshAnalytics(BaseModel):
    view_name: Optional[str] = None


class Reconcile(BaseModel):
    mode: str = "full"

    @field_validator("mode")
    @classmethod
    def check_mode(cls, v: str) -> str:
        if v not in ("full", "drift", "orphans"):
            raise ValueError("mode must be one of full, drift, orphans")
        return v


class JobRecord(BaseModel):
    id: str
    queue: str
    payload: Dict[str, Any]
    state: str
    priority: int = 0
    retry_count: int = 0
    retry_limit: int = 0
    singleton_key: Optional[str] = None
    start_after: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    claim_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    output: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None

    model_config = {"from_attributes": True}
