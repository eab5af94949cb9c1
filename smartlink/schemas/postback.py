from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class PostbackEvent(BaseModel):
    """Normalized conversion envelope published to the event bus."""

    click_id: str
    external_click_id: Optional[str] = None
    conversion_type: str
    transaction_type: Optional[str] = None
    transaction_id: Optional[str] = None
    amount_gross: Optional[Decimal] = None
    amount_net: Optional[Decimal] = None
    fan_of_id: Optional[str] = None
    fan_username: Optional[str] = None
    creator_acct_id: str = ""
    creator_username: Optional[str] = None
    smart_link_id: str
    smart_link_name: Optional[str] = None
    conversion_at: datetime
    external_event_key: str = Field(min_length=1)
    run_id: str = Field(min_length=1)

    @property
    def click_reference(self) -> str:
        return self.external_click_id or self.click_id
