from typing import Optional

from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    received: bool = True
    event_id: str
    duplicate: bool = False
    ignored: bool = False
    user_id: Optional[int] = None
