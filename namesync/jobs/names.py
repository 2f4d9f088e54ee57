UPDATE_OWNERSHIP = "update-ownership"
SEND_NOTIFICATION = "send-notification"
EXPIRE_ORDERS = "expire-orders"
BATCH_EXPIRE_ORDERS = "batch-expire-orders"
SYNC_ENTITY_METADATA = "sync-entity-metadata"
SCHEDULE_DAILY_METADATA_SYNC = "schedule-daily-metadata-sync"
REFRESH_ANALYTICS = "refresh-analytics"
RECONCILE_INDEX = "reconcile-index"
