"""
Stream Protocol Implementation

Defines the colon-separated text protocol spoken with the chat server.

Outbound frames have the form "<kind>:<payload>" where kind is "iam"
(join with a username) or "msg" (chat message). Inbound frames have the
form "<sender>:<body>". The protocol carries no length prefix and no
terminator: a frame ends at the write boundary, so each read is taken
as one frame. Newline framing (FRAME_DELIMITER) is available for servers
that terminate their frames.
"""

import logging
from enum import Enum
from typing import List, Optional, Tuple, Union
from ..common.message import Message, MessageSender

FRAME_DELIMITER = b'\n'
SEPARATOR = ':'


class FrameKind(Enum):
    """Frame kinds a client may send"""
    JOIN = 'iam'
    MESSAGE = 'msg'


def _frame_kind(kind: Union[FrameKind, str]) -> FrameKind:
    if isinstance(kind, FrameKind):
        return kind
    for candidate in FrameKind:
        if kind.upper() == candidate.name or kind == candidate.value:
            return candidate
    raise ValueError(f"Unknown frame kind: {kind}")


def encode_message(kind: Union[FrameKind, str], payload: str,
                   delimiter: Optional[bytes] = None) -> bytes:
    """
    Encode an outbound frame.

    Args:
        kind: FrameKind, or one of "join", "message", "iam", "msg"
        payload: Text payload, may be empty
        delimiter: Frame terminator, or None to rely on the write boundary

    Returns:
        bytes: The encoded frame

    Raises:
        ValueError: If kind is not a known frame kind
    """
    frame = f"{_frame_kind(kind).value}{SEPARATOR}{payload}".encode('utf-8')
    if delimiter:
        frame += delimiter
    return frame


def classify_provenance(sender_name: str, local_username: str) -> MessageSender:
    """Exact, case-sensitive comparison of the sender against the local user"""
    if sender_name == local_username:
        return MessageSender.OURSELF
    return MessageSender.SOMEONE_ELSE


def truncated_utf8_length(data: bytes) -> int:
    """
    Count the bytes of an unfinished UTF-8 sequence at the end of data.

    Returns:
        int: 0 if data ends on a character boundary
    """
    for back in range(1, min(4, len(data)) + 1):
        byte = data[-back]
        if byte & 0xC0 == 0x80:
            # continuation byte, keep looking for the lead byte
            continue
        if byte >= 0xF8:
            # not a valid lead byte, nothing to wait for
            return 0
        if byte >= 0xF0:
            needed = 4
        elif byte >= 0xE0:
            needed = 3
        elif byte >= 0xC0:
            needed = 2
        else:
            needed = 1
        return back if needed > back else 0
    return 0


def parse_frame(frame: bytes, username: str = '') -> Optional[Message]:
    """
    Parse a single inbound frame.

    The first colon separates the sender name from the body; any further
    colons belong to the body.

    Args:
        frame: Raw bytes of one frame, without its delimiter
        username: The local user's name, used to classify provenance

    Returns:
        The parsed Message, or None if the frame is malformed
    """
    try:
        text = frame.decode('utf-8')
    except UnicodeDecodeError as e:
        logging.warning(f"Dropping frame with invalid UTF-8: {e}")
        return None

    if text.endswith('\r'):
        text = text[:-1]
    if not text:
        return None

    name, separator, body = text.partition(SEPARATOR)
    if not separator:
        logging.warning(f"Dropping frame without sender separator: {text!r}")
        return None

    return Message(
        username=name,
        message=body,
        sender=classify_provenance(name, username)
    )


def decode_messages(data: bytes, username: str = '',
                    delimiter: Optional[bytes] = None,
                    final: bool = False) -> Tuple[List[Message], bytes]:
    """
    Decode every complete frame in a buffer.

    Without a delimiter the whole buffer is one frame, unless it ends in
    the middle of a UTF-8 character: such a buffer is certainly not a
    whole write and is returned untouched as the remainder.

    Args:
        data: Accumulated bytes (previous remainder plus new data)
        username: The local user's name, used to classify provenance
        delimiter: Frame terminator, or None for write-boundary framing
        final: Also parse whatever is left over, used once the peer has
            closed the stream

    Returns:
        Tuple of (messages in arrival order, unconsumed trailing bytes)
    """
    data = bytes(data)
    if delimiter is None:
        if not final and truncated_utf8_length(data):
            return [], data
        frames, remainder = [data], b''
    else:
        *frames, remainder = data.split(delimiter)
        if final:
            frames.append(remainder)
            remainder = b''

    messages = []
    for frame in frames:
        message = parse_frame(frame, username)
        if message is not None:
            messages.append(message)
    return messages, remainder
