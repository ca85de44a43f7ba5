"""Wire models exchanged with the negotiation backend."""

import uuid

from pydantic import BaseModel, Field


class StreamRequest(BaseModel):
    """A request for a device to open a tunnel, as seen by the device."""

    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    device_id: str
    uri: str
    authorization_token: str


class StreamResult(BaseModel):
    """Outcome of a stream request, as seen by the service."""

    request_id: str
    is_accepted: bool
    uri: str = ""
    authorization_token: str = ""
