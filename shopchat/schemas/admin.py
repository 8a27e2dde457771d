from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class TakeoverRequest(BaseModel):
    minutes: float = Field(gt=0)


class TakeoverResponse(BaseModel):
    conversation_key: str
    state: str
    until: Optional[datetime] = None


class UsersResponse(BaseModel):
    count: int
    users: List[str]
