"""
Base schemas with common functionality.
"""
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict


class BaseSchema(BaseModel):
    """Base schema for outbound API responses built from ORM rows"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True
    )


class RemotePayload(BaseModel):
    """
    Base for inbound Shopify payloads.

    Shopify adds fields between API versions, so unknown keys are ignored. Ids
    arrive as JSON numbers but are stored as strings locally.
    """

    model_config = ConfigDict(extra="ignore")


def coerce_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


# Shopify ids arrive as JSON numbers; locally they are strings
RemoteId = Annotated[Optional[str], BeforeValidator(coerce_id)]
