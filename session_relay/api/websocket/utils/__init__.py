"""
WebSocket Utilities
===================
Shared utility functions and helpers.

Components:
- MessageCodec: Wire envelope decoding/encoding
- SignalEnvelope: Decoded wire message
- MessageType: Envelope type discriminator
"""

from .message_codec import MessageCodec, MessageType, SignalEnvelope, SIGNALING_TYPES

__all__ = ["MessageCodec", "MessageType", "SignalEnvelope", "SIGNALING_TYPES"]
