"""Base schema classes with camelCase alias generation.

Backend Python code stays snake_case; API JSON is camelCase. Timestamps
leave the API as UTC with an explicit offset.
"""
from datetime import datetime
from typing import Annotated

from pydantic import AfterValidator, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.models.base import as_utc

# Some backends hand back naive datetimes; every stored timestamp is UTC.
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class CamelModel(BaseModel):
    """Requests and dict-built responses. Accepts either key style, outputs camelCase."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


class CamelORMModel(CamelModel):
    """Responses read straight off ORM rows."""
    model_config = ConfigDict(from_attributes=True)
