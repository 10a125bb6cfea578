from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ChatRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source: Literal["web", "whatsapp"]
    user_id: str
    conversation_id: str
    text: str
    access_token: Optional[str] = None
    currency: Optional[Literal["ARS", "USD"]] = None
    locale: Optional[str] = None


class ChatResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ok: bool
    message: str
    conversation_id: Optional[str] = None
    intent: Optional[str] = None
    response_id: Optional[str] = None
    requires_auth: Optional[bool] = None
