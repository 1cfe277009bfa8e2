from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SubscriptionState(BaseModel):
    """
    Durable per-subscription record, serialized to JSON and encrypted at rest.

    Fields
    - subscription_id: Graph webhook subscription id; the storage key.
    - access_token / refresh_token: delegated credentials, rotated together on
      renewal. Excluded from repr so they never reach log output.
    - resume_cursor: last `@odata.deltaLink` of a completed delta pass. Empty
      means start from the beginning of the feed. Only ever replaced wholesale
      by the terminal link of a completed pass.
    - last_notification_at: UTC time the last notification was processed.
    """

    subscription_id: str = Field(..., min_length=1)
    access_token: str = Field(default="", repr=False)
    refresh_token: str = Field(default="", repr=False)
    resume_cursor: str = Field(default="", description="Delta link to resume from")
    last_notification_at: Optional[datetime] = None

    def advance_cursor(self, cursor: str) -> None:
        """Replace the resume cursor with the terminal link of a completed pass."""
        if not cursor:
            raise ValueError("cursor must be a non-empty delta link")
        self.resume_cursor = cursor
