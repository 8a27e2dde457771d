from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LineSource(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str = "user"  # user, group, room
    user_id: Optional[str] = Field(default=None, alias="userId")


class LineMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    type: str  # text, image, file, sticker, ...
    text: Optional[str] = None
    file_name: Optional[str] = Field(default=None, alias="fileName")


class LineEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    reply_token: Optional[str] = Field(default=None, alias="replyToken")
    source: Optional[LineSource] = None
    message: Optional[LineMessage] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.source.user_id if self.source else None


class LineWebhookRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    destination: Optional[str] = None
    events: List[LineEvent] = []


class InboundMessage(BaseModel):
    conversation_key: str
    text: str
    reply_token: Optional[str] = None
