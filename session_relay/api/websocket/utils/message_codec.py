"""
Message Codec
=============
Parses and serializes the wire envelope exchanged with relay clients.

Every frame is one JSON object carrying at least a string ``type``. The
relay never inspects the rest of the object: ``offer``/``answer`` carry
opaque SDP and ICE payloads, so unknown fields are passed through untouched.

Encoding is compact (no whitespace) so envelopes built by the relay are
byte-for-byte what a ``JSON.stringify`` client would produce.
"""

import json
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from ....core.exceptions import DecodeError


class MessageType(str, Enum):
    """Envelope types the relay understands"""
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    CHAT = "chat"
    PARTICIPANT_JOINED = "participant-joined"
    PARTICIPANT_LEFT = "participant-left"
    NO_PARTICIPANT = "no-participant"

    @classmethod
    def parse(cls, value: str) -> Optional["MessageType"]:
        """Return the member for ``value``, or None for unknown types."""
        try:
            return cls(value)
        except ValueError:
            return None


# Forwarded verbatim to peers without touching the store
SIGNALING_TYPES = frozenset({
    MessageType.OFFER,
    MessageType.ANSWER,
    MessageType.ICE_CANDIDATE,
})

_PREVIEW_LIMIT = 120

# Surrogate code points only survive decoding unpaired
_LONE_SURROGATE = re.compile("[\ud800-\udfff]")


def _escape_surrogate(match: "re.Match") -> str:
    return "\\u%04x" % ord(match.group())


def _parse_float(token: str) -> Optional[float]:
    """Numbers beyond double range become null, matching JSON.stringify."""
    value = float(token)
    if math.isinf(value):
        return None
    return value


@dataclass(frozen=True)
class SignalEnvelope:
    """
    One decoded wire message.

    ``fields`` holds the complete JSON object, ``type`` included, exactly as
    received. ``message_type`` is None when ``type`` is not a known value.
    """
    type: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def message_type(self) -> Optional[MessageType]:
        return MessageType.parse(self.type)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.fields)

    @classmethod
    def build(cls, message_type: MessageType, **extra: Any) -> "SignalEnvelope":
        """Create a relay-emitted envelope, ``type`` first."""
        fields = {"type": message_type.value}
        fields.update(extra)
        return cls(type=message_type.value, fields=fields)


class MessageCodec:
    """
    Stateless JSON codec for signal envelopes.

    All methods are static - no state needed.
    """

    @staticmethod
    def decode(raw_frame: Union[str, bytes, bytearray]) -> SignalEnvelope:
        """
        Decode a raw frame into a SignalEnvelope.

        Args:
            raw_frame: Text frame, or binary frame holding UTF-8 JSON

        Returns:
            Decoded envelope with all fields preserved

        Raises:
            DecodeError: invalid UTF-8, invalid JSON (NaN and Infinity included),
                non-object payload, or missing/non-string ``type``
        """
        if isinstance(raw_frame, (bytes, bytearray)):
            try:
                text = bytes(raw_frame).decode("utf-8")
            except UnicodeDecodeError as e:
                raise DecodeError(f"invalid utf-8: {e.reason}") from e
        else:
            text = raw_frame

        preview = text[:_PREVIEW_LIMIT]

        def reject_constant(token: str):
            raise DecodeError(f"invalid json: non-standard constant {token}", preview)

        try:
            parsed = json.loads(text, parse_float=_parse_float, parse_constant=reject_constant)
        except (json.JSONDecodeError, TypeError) as e:
            raise DecodeError(f"invalid json: {e}", preview) from e

        if not isinstance(parsed, dict):
            raise DecodeError(f"expected a JSON object, got {type(parsed).__name__}", preview)

        message_type = parsed.get("type")
        if not isinstance(message_type, str):
            raise DecodeError("missing or non-string 'type' field", preview)

        return SignalEnvelope(type=message_type, fields=parsed)

    @staticmethod
    def encode(envelope: Union[SignalEnvelope, Dict[str, Any]]) -> str:
        """
        Serialize an envelope (or a plain dict) to a compact JSON frame.

        Lone surrogates cannot be written as UTF-8, so they are emitted as
        ``\\uXXXX`` escapes, as ``JSON.stringify`` does. All other text is
        written as-is.

        Example:
            >>> MessageCodec.encode(MessageCodec.no_participant())
            '{"type":"no-participant"}'

        Raises:
            ValueError: the payload holds NaN or an infinity
        """
        payload = envelope.fields if isinstance(envelope, SignalEnvelope) else envelope
        frame = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        return _LONE_SURROGATE.sub(_escape_surrogate, frame)

    @staticmethod
    def participant_joined(user_id: str) -> SignalEnvelope:
        return SignalEnvelope.build(MessageType.PARTICIPANT_JOINED, userId=user_id)

    @staticmethod
    def participant_left(user_id: str) -> SignalEnvelope:
        return SignalEnvelope.build(MessageType.PARTICIPANT_LEFT, userId=user_id)

    @staticmethod
    def no_participant() -> SignalEnvelope:
        return SignalEnvelope.build(MessageType.NO_PARTICIPANT)
