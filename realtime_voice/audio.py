"""
Audio payload helpers.

Audio travels inside JSON frames as base64 strings. These helpers are the
only place bytes are converted to and from that form; no framing or
resampling happens here.
"""

import base64


def encode_audio(data: bytes) -> str:
    """Encode raw audio bytes (PCM16 or a negotiated codec) for the wire."""
    return base64.b64encode(bytes(data)).decode("ascii")


def decode_audio(payload: str) -> bytes:
    """Decode a base64 audio payload received from upstream."""
    return base64.b64decode(payload)
