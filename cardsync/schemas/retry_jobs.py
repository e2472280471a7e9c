"""
Typed payloads for each retry job type.

A job row stores its payload as JSON; these models validate it on enqueue and
again when the runner picks the job up.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from cardsync.core.enums import RetryJobType
from .base import BaseSchema


class RetryJobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    store_key: str


class EndRemoteListingPayload(RetryJobPayload):
    remote_product_id: str


class ZeroRemoteQuantityPayload(RetryJobPayload):
    inventory_item_id: str
    location_gid: str


class EnforceLocationPayload(RetryJobPayload):
    inventory_item_id: str
    desired_location_gid: str
    other_location_gids: list[str] = Field(default_factory=list)
    quantity: int = Field(default=1, ge=0)


class SetRemoteLevelPayload(RetryJobPayload):
    inventory_item_id: str
    location_gid: str
    quantity: int = Field(ge=0)


PAYLOAD_MODELS: Dict[RetryJobType, Type[RetryJobPayload]] = {
    RetryJobType.END_REMOTE_LISTING: EndRemoteListingPayload,
    RetryJobType.ZERO_REMOTE_QUANTITY: ZeroRemoteQuantityPayload,
    RetryJobType.ENFORCE_LOCATION: EnforceLocationPayload,
    RetryJobType.SET_REMOTE_LEVEL: SetRemoteLevelPayload,
}


def parse_payload(job_type: RetryJobType, payload: Dict[str, Any]) -> RetryJobPayload:
    return PAYLOAD_MODELS[job_type].model_validate(payload)


class RetryJobRead(BaseSchema):
    id: int
    job_type: str
    store_key: str
    sku: str
    payload: Dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    next_run_at: datetime
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
