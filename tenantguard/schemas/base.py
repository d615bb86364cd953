"""
Base schemas shared by every API model.

- CamelModel: JSON field names are camelCase on the wire, snake_case in Python
- UTCDatetime: serializes naive UTC datetimes with a Z suffix
"""

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel

# Custom datetime type that serializes with Z suffix for UTC
# Usage: date: UTCDatetime instead of date: datetime
UTCDatetime = Annotated[
    datetime,
    PlainSerializer(
        lambda dt: dt.strftime("%Y-%m-%dT%H:%M:%SZ") if dt else None,
        return_type=str,
    ),
]

# Optional version for nullable datetime fields
UTCDatetimeOptional = Annotated[
    datetime | None,
    PlainSerializer(
        lambda dt: dt.strftime("%Y-%m-%dT%H:%M:%SZ") if dt else None,
        return_type=str | None,
    ),
]


class CamelModel(BaseModel):
    """Accepts both field names and camelCase aliases; always emits camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )
