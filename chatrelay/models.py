# chatrelay/models.py
# Data model for messages, addressing and call sessions.
#
# Messages are pydantic models so that values coming off the wire and values coming
# back from a store are validated the same way. Call sessions live only in memory
# and are owned by the call coordinator.

import uuid             # For call session ids.
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from chatrelay import config


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class AddressKind(str, Enum):
    BROADCAST = "broadcast"
    DIRECT = "direct"
    GROUP = "group"


class Addressing(BaseModel):
    """Where a message goes: everyone, one identity, or one group."""

    kind: AddressKind
    target: Optional[str] = None

    @model_validator(mode="after")
    def _check_target(self):
        if self.kind == AddressKind.BROADCAST and self.target is not None:
            raise ValueError("broadcast addressing takes no target")
        if self.kind != AddressKind.BROADCAST and not self.target:
            raise ValueError(f"{self.kind.value} addressing requires a target")
        return self

    @classmethod
    def broadcast(cls):
        return cls(kind=AddressKind.BROADCAST)

    @classmethod
    def direct(cls, to_identity):
        return cls(kind=AddressKind.DIRECT, target=to_identity)

    @classmethod
    def group(cls, group_name):
        return cls(kind=AddressKind.GROUP, target=group_name)


class AttachmentType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"


class Attachment(BaseModel):
    """A file already uploaded elsewhere; the relay only carries its reference."""

    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    type: AttachmentType
    size_bytes: int = Field(..., alias="sizeBytes", ge=0, le=config.MAX_ATTACHMENT_SIZE_BYTES)


class Message(BaseModel):
    id: Optional[int] = None
    from_identity: str
    addressing: Addressing
    text: Optional[str] = Field(None, max_length=config.MAX_TEXT_LENGTH)
    attachment: Optional[Attachment] = None
    timestamp_utc: datetime = Field(default_factory=now_utc)
    is_read: bool = False
    read_at_utc: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_content(self):
        if not (self.text and self.text.strip()) and self.attachment is None:
            raise ValueError("a message needs text or an attachment")
        return self

    @property
    def to_identity(self):
        if self.addressing.kind == AddressKind.DIRECT:
            return self.addressing.target
        return None

    @property
    def group_name(self):
        if self.addressing.kind == AddressKind.GROUP:
            return self.addressing.target
        return None


class MediaKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class CallState(str, Enum):
    IDLE = "idle"
    RINGING = "ringing"
    ACTIVE = "active"
    ENDED = "ended"


class CallSession(BaseModel):
    """One two-party call handshake. Discarded once it reaches ENDED."""

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    caller: str
    callee: str
    media_kind: MediaKind
    state: CallState = CallState.RINGING
    created_at: datetime = Field(default_factory=now_utc)

    def peer_of(self, identity):
        return self.callee if identity == self.caller else self.caller

    def links(self, first, second):
        return {self.caller, self.callee} == {first, second}
