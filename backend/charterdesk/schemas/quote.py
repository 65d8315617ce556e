"""Quote engagement schemas."""

from datetime import datetime

from pydantic import BaseModel


class QuoteStatusResponse(BaseModel):
    quote_id: str
    status: str
    first_opened_at: datetime | None = None
    last_opened_at: datetime | None = None
    open_count: int = 0


class CaptchaSiteKeyResponse(BaseModel):
    site_key: str
