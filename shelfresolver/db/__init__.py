from shelfresolver.db.database import async_session_factory, init_db
from shelfresolver.db.operations import (
    apply_user_collection_metadata,
    backfill_lightweight_fingerprint,
    create_manual_entry,
    find_by_fuzzy_fingerprint,
    find_by_identity_key,
    find_by_lightweight_fingerprint,
    find_by_title,
    find_existing_collectable,
    get_collectable,
    get_user_collection,
    link_collectable_to_shelf,
    record_fuzzy_fingerprint,
    upsert_collectable,
)

__all__ = [
    "apply_user_collection_metadata",
    "async_session_factory",
    "backfill_lightweight_fingerprint",
    "create_manual_entry",
    "find_by_fuzzy_fingerprint",
    "find_by_identity_key",
    "find_by_lightweight_fingerprint",
    "find_by_title",
    "find_existing_collectable",
    "get_collectable",
    "get_user_collection",
    "init_db",
    "link_collectable_to_shelf",
    "record_fuzzy_fingerprint",
    "upsert_collectable",
]
