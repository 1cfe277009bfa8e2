from __future__ import annotations

import json
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from common.errors import ValidationError


class Notification(BaseModel):
    """One entry of a Graph change-notification batch."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    subscription_id: str = Field(..., alias="subscriptionId", min_length=1)
    client_state: Optional[str] = Field(default=None, alias="clientState", repr=False)
    change_type: Optional[str] = Field(default=None, alias="changeType")
    resource: Optional[str] = None
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")


class NotificationBatch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    value: List[Notification] = Field(..., min_length=1)

    def subscription_ids(self) -> List[str]:
        """Distinct subscription ids in first-appearance order."""
        seen: set[str] = set()
        out: List[str] = []
        for n in self.value:
            if n.subscription_id not in seen:
                seen.add(n.subscription_id)
                out.append(n.subscription_id)
        return out


def decode_batch(body: Union[str, bytes, None]) -> NotificationBatch:
    """Decode a notification request body; raises ValidationError on any mismatch."""
    if body is None or body == "" or body == b"":
        raise ValidationError("Empty request body and no validationToken")
    try:
        raw: Any = json.loads(body)
    except (ValueError, RecursionError) as exc:
        raise ValidationError("Request body is not JSON") from exc
    try:
        return NotificationBatch.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Not a notification batch: {exc.error_count()} error(s)") from exc


__all__ = ["Notification", "NotificationBatch", "decode_batch"]
