import uuid
from sqlalchemy import Column, String, DateTime, Integer, Boolean, JSON, Text, ForeignKey, Index, UniqueConstraint, text
from namesync.db import Base, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


# at most one open job per (queue, singleton_key)
_OPEN_SINGLETON = text("singleton_key IS NOT NULL AND state IN ('created', 'retry', 'active')")


class EnsName(Base):
    __tablename__ = "ens_names"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    token_id = Column(String(78), nullable=False, unique=True)
    owner_address = Column(String(42), nullable=False)
    registrant = Column(String(42), nullable=True)
    expiry_date = Column(DateTime, nullable=True)
    registration_date = Column(DateTime, nullable=True)
    last_transfer_date = Column(DateTime, nullable=True)
    last_sale_price_wei = Column(String(78), nullable=True)
    last_sale_date = Column(DateTime, nullable=True)
    resolver_address = Column(String(42), nullable=True)
    # "metadata" is reserved on declarative classes
    ens_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_ens_names_owner", "owner_address"),
    )


class Listing(Base):
    __tablename__ = "listings"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ens_name_id = Column(Integer, ForeignKey("ens_names.id", ondelete="CASCADE"), nullable=False)
    seller_address = Column(String(42), nullable=False)
    price_wei = Column(String(78), nullable=False)
    currency_address = Column(String(42), nullable=False, default="0x0000000000000000000000000000000000000000")
    order_hash = Column(String(66), nullable=True)
    order_data = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_listings_name_status", "ens_name_id", "status"),
        Index("idx_listings_status_expires", "status", "expires_at"),
    )


class Offer(Base):
    __tablename__ = "offers"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ens_name_id = Column(Integer, ForeignKey("ens_names.id", ondelete="CASCADE"), nullable=False)
    buyer_address = Column(String(42), nullable=False)
    offer_amount_wei = Column(String(78), nullable=False)
    currency_address = Column(String(42), nullable=False, default="0x0000000000000000000000000000000000000000")
    order_hash = Column(String(66), nullable=True)
    order_data = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_offers_name_status", "ens_name_id", "status"),
        Index("idx_offers_status_expires", "status", "expires_at"),
    )


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(42), nullable=False, unique=True)
    email = Column(String(255), nullable=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class WatchlistEntry(Base):
    __tablename__ = "watchlist"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    ens_name_id = Column(Integer, ForeignKey("ens_names.id", ondelete="CASCADE"), nullable=False)
    notify_on_listing = Column(Boolean, nullable=False, default=True)
    notify_on_price_change = Column(Boolean, nullable=False, default=True)
    notify_on_sale = Column(Boolean, nullable=False, default=True)
    notify_on_offer = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "ens_name_id", name="uq_watchlist_user_name"),
        Index("idx_watchlist_name", "ens_name_id"),
    )


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(60), nullable=False)
    ens_name_id = Column(Integer, nullable=True)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)
    sent_at = Column(DateTime, default=utcnow, nullable=False)
    read_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_notifications_user", "user_id", "sent_at"),
    )


class Job(Base):
    __tablename__ = "jobs"
    id = Column(String(36), primary_key=True, default=_uuid)
    queue = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    state = Column(String(20), nullable=False, default="created")
    priority = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    retry_limit = Column(Integer, nullable=False, default=3)
    retry_delay = Column(Integer, nullable=False, default=60)
    retry_backoff = Column(Boolean, nullable=False, default=True)
    expire_in_seconds = Column(Integer, nullable=False, default=24 * 3600)
    singleton_key = Column(String(255), nullable=True)
    start_after = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    # token of the current claim; acknowledgements from an older claim are ignored
    claim_id = Column(String(36), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    output = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_jobs_fetch", "queue", "state", "start_after"),
        Index("uq_jobs_singleton", "queue", "singleton_key", unique=True,
              postgresql_where=_OPEN_SINGLETON, sqlite_where=_OPEN_SINGLETON),
        Index("idx_jobs_completed", "state", "completed_at"),
    )


class ArchivedJob(Base):
    __tablename__ = "jobs_archive"
    id = Column(String(36), primary_key=True)
    queue = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    state = Column(String(20), nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    retry_limit = Column(Integer, nullable=False, default=0)
    singleton_key = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    output = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)
    archived_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_jobs_archive_state", "state", "archived_at"),
    )


class JobSchedule(Base):
    __tablename__ = "job_schedules"
    name = Column(String(100), primary_key=True)
    cron = Column(String(100), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    payload = Column(JSON, nullable=False, default=dict)
    options = Column(JSON, nullable=False, default=dict)
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
