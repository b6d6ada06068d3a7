"""Closed vocabularies for queue state; strings only at the edges."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Union


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


class ChangeType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


# Tables the business layer is expected to push.
SYNCABLE_TABLES = (
    "customers",
    "product_models",
    "products",
    "inventory_items",
    "product_accessories",
    "sales",
    "invoices",
    "returns",
    "swaps",
    "deals",
    "debts",
    "debt_payments",
    "boqs",
    "invoice_templates",
    "users",
)

# Local-only or security-sensitive tables; never queued.
EXCLUDED_TABLES = (
    "company_settings",
    "license_activations",
    "license_validations",
    "hardware_snapshots",
    "sync_queue",
    "sync_meta",
    "sync_metadata",
    "id_mapping",
)


def parse_status(value: Union[str, SyncStatus]) -> SyncStatus:
    if isinstance(value, SyncStatus):
        return value
    try:
        return SyncStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported sync status: {value!r}") from None


def parse_change_type(value: Union[str, ChangeType]) -> ChangeType:
    if isinstance(value, ChangeType):
        return value
    try:
        return ChangeType(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported change type: {value!r}") from None


def validate_table_name(table_name: str) -> str:
    if not table_name or not isinstance(table_name, str):
        raise ValueError("Invalid table name: must be a non-empty string")
    if table_name in EXCLUDED_TABLES:
        raise ValueError(f"Table {table_name} is excluded from sync")
    if table_name not in SYNCABLE_TABLES:
        logging.getLogger("tillbook.sync.queue").warning(
            "Table %s is not in the syncable tables list", table_name
        )
    return table_name


def normalize_record_id(record_id: Union[str, int]) -> str:
    if isinstance(record_id, bool) or record_id is None:
        raise ValueError("Invalid record ID: must be a non-empty string")
    value = str(record_id).strip()
    if not value:
        raise ValueError("Invalid record ID: must be a non-empty string")
    return value


__all__ = [
    "ChangeType",
    "EXCLUDED_TABLES",
    "HealthStatus",
    "SYNCABLE_TABLES",
    "SyncStatus",
    "normalize_record_id",
    "parse_change_type",
    "parse_status",
    "validate_table_name",
]
