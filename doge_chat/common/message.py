"""
Chat Message Model

Value types describing a chat message as delivered to observers,
independent of the protocol used on the wire.
"""

from dataclasses import dataclass
from enum import Enum, auto


class MessageSender(Enum):
    """Provenance of a message relative to the local user"""
    OURSELF = auto()
    SOMEONE_ELSE = auto()


@dataclass(frozen=True)
class Message:
    """
    Represents a chat message received from the server.

    Attributes:
        username: Name of the user who sent the message
        message: Message body
        sender: Whether the local user or someone else wrote it
    """
    username: str
    message: str
    sender: MessageSender = MessageSender.SOMEONE_ELSE

    @property
    def is_from_self(self) -> bool:
        return self.sender is MessageSender.OURSELF

    def __str__(self):
        return f"{self.username}: {self.message}"
