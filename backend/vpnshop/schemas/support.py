from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class TicketRecord(BaseModel):
    user_id: int
    username: Optional[str] = None
    status: str
    message_count: int
    last_activity: datetime
    post_message_id: Optional[int] = None

    class Config:
        from_attributes = True
