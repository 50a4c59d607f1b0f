from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from pydantic import BaseModel, Field, ConfigDict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_object_id(value: Any) -> Optional[ObjectId]:
    """ObjectId from an ObjectId or its hex string; None for anything else."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def new_entry_id() -> str:
    """Locally generated ledger entry id (24 hex chars)."""
    return str(ObjectId())


class PyObjectId(ObjectId):
    """ObjectId field: accepts hex strings, serializes to str in JSON."""

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any):
        from pydantic_core import core_schema

        return core_schema.no_info_plain_validator_function(
            cls.validate,
            serialization=core_schema.plain_serializer_function_ser_schema(
                str, when_used="json"
            ),
        )

    @classmethod
    def validate(cls, value: Any) -> ObjectId:
        oid = coerce_object_id(value)
        if oid is None:
            raise ValueError(f"Invalid ObjectId: {value!r}")
        return oid


class MongoModel(BaseModel):
    """Document with an ObjectId primary key stored as _id."""

    id: PyObjectId = Field(default_factory=PyObjectId, alias="_id")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )
