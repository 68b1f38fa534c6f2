from bson import Decimal128, ObjectId
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any


def serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    return value


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a stored record for JSON transport (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    return {
        key: serialize_value(value)
        for key, value in doc.items()
        if key != "_id"
    }
