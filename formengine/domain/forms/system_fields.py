"""Record meta fields readable from conditions.

Config authors reference system fields with sheet-like names ("STATUS",
"PDF_URL"); records store them under canonical keys ("status", "pdfUrl").
"""

from typing import Any, Mapping, Optional

SYSTEM_FIELD_ALIASES = {
    "status": "status",
    "pdfurl": "pdfUrl",
    "pdf_url": "pdfUrl",
    "pdf": "pdfUrl",
    "id": "id",
    "recordid": "id",
    "record_id": "id",
    "record id": "id",
    "createdat": "createdAt",
    "created_at": "createdAt",
    "created": "createdAt",
    "updatedat": "updatedAt",
    "updated_at": "updatedAt",
    "updated": "updatedAt",
}


def normalize_system_field_id(raw_field_id: Any) -> Optional[str]:
    """Map a user-facing field id to a canonical record meta key, if any."""
    if raw_field_id is None:
        return None
    key = str(raw_field_id).strip().lower()
    if not key:
        return None
    return SYSTEM_FIELD_ALIASES.get(key)


def get_system_field_value(field_id: str, meta: Optional[Mapping[str, Any]]) -> Any:
    """Read a record meta value through its alias, or None."""
    key = normalize_system_field_id(field_id)
    if not key or not meta:
        return None
    return meta.get(key)
