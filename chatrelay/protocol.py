# chatrelay/protocol.py
# Wire protocol: inbound action payloads and the JSON shape of stored messages.
#
# Inbound frames look like `{"type": "SendPrivateMessage", "payload": {...}}`; each
# action's payload is validated with the pydantic model registered for it in
# ACTION_PAYLOADS. Outbound events are encoded by chatrelay.connection.

import re               # For the identity format check.
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.models import AddressKind, Attachment, MediaKind

# Identities are 3-30 characters: an alphanumeric first character, then letters,
# digits, underscores or hyphens.
VALID_IDENTIFIER_REGEX = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{2,29}$")

# GetConversation kinds as the client names them.
CONVERSATION_KINDS = {
    "public": AddressKind.BROADCAST,
    "user": AddressKind.DIRECT,
    "group": AddressKind.GROUP,
}


class ActionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegisterPayload(ActionPayload):
    identity: str

    @field_validator("identity")
    @classmethod
    def _valid_identity(cls, value):
        if not VALID_IDENTIFIER_REGEX.match(value):
            raise ValueError("Invalid identity format (3-30 chars, letters, numbers, _, -).")
        return value


class BroadcastPayload(ActionPayload):
    text: Optional[str] = None
    attachment: Optional[Attachment] = None


class PrivateMessagePayload(ActionPayload):
    to: str = Field(..., min_length=1)
    text: Optional[str] = None
    attachment: Optional[Attachment] = None


class GroupMessagePayload(ActionPayload):
    group: str
    text: Optional[str] = None
    attachment: Optional[Attachment] = None


class MarkReadPayload(ActionPayload):
    message_id: int = Field(..., alias="messageId")
    from_user: str = Field(..., alias="fromUser")


class UserTargetPayload(ActionPayload):
    to: str = Field(..., min_length=1)


class GroupTargetPayload(ActionPayload):
    group: str


class ConversationPayload(ActionPayload):
    kind: str
    name: Optional[str] = None

    @field_validator("kind")
    @classmethod
    def _known_kind(cls, value):
        if value not in CONVERSATION_KINDS:
            raise ValueError(f"kind must be one of {sorted(CONVERSATION_KINDS)}")
        return value


class EmptyPayload(ActionPayload):
    pass


class CallUserPayload(ActionPayload):
    to: str = Field(..., min_length=1)
    media_kind: MediaKind = Field(..., alias="mediaKind")


class CallerPayload(ActionPayload):
    caller: str = Field(..., min_length=1)


class HangupPayload(ActionPayload):
    other: str = Field(..., min_length=1)


class OfferPayload(ActionPayload):
    to: str = Field(..., min_length=1)
    offer: Any


class AnswerPayload(ActionPayload):
    to: str = Field(..., min_length=1)
    answer: Any


class IceCandidatePayload(ActionPayload):
    to: str = Field(..., min_length=1)
    candidate: Any


ACTION_PAYLOADS = {
    "Register": RegisterPayload,
    "SendMessageToAll": BroadcastPayload,
    "SendPrivateMessage": PrivateMessagePayload,
    "SendMessageToGroup": GroupMessagePayload,
    "MarkMessageAsRead": MarkReadPayload,
    "TypingToUser": UserTargetPayload,
    "TypingToGroup": GroupTargetPayload,
    "JoinGroup": GroupTargetPayload,
    "LeaveGroup": GroupTargetPayload,
    "GetConversation": ConversationPayload,
    "GetUsers": EmptyPayload,
    "GetMyGroups": EmptyPayload,
    "CallUser": CallUserPayload,
    "AcceptCall": CallerPayload,
    "RejectCall": CallerPayload,
    "Hangup": HangupPayload,
    "SendOffer": OfferPayload,
    "SendAnswer": AnswerPayload,
    "SendIceCandidate": IceCandidatePayload,
}


def message_to_wire(message):
    """JSON-ready dict for one stored message, as returned in Conversation events."""
    attachment = message.attachment
    return {
        "id": message.id,
        "from": message.from_identity,
        "to": message.to_identity,
        "group": message.group_name,
        "text": message.text,
        "timestampUtc": message.timestamp_utc.isoformat(),
        "fileUrl": attachment.url if attachment else None,
        "fileName": attachment.name if attachment else None,
        "fileType": attachment.type.value if attachment else None,
        "fileSize": attachment.size_bytes if attachment else None,
        "isRead": message.is_read,
        "readAtUtc": message.read_at_utc.isoformat() if message.read_at_utc else None,
    }
