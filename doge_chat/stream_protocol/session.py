"""
Stream Chat Session

Manages one chat connection from connect to close: opens the duplex
stream, joins with a username, reads and decodes inbound frames, and
hands each message to the registered observer.
"""

import logging
import threading
import weakref
from enum import Enum, auto
from typing import Callable, Optional
from ..common.message import Message
from . import protocol
from .transport import EventLoop, SocketStream, StreamEvent

MAX_READ_LENGTH = 4096


class ConnectionState(Enum):
    """Lifecycle of a chat session"""
    IDLE = auto()
    CONNECTING = auto()
    OPEN = auto()
    CLOSING = auto()
    CLOSED = auto()
    FAILED = auto()


TERMINAL_STATES = (ConnectionState.CLOSED, ConnectionState.FAILED)


class ChatSession:
    """
    Client side of a chat room connection.

    All state is mutated from the event loop thread; the lock only guards
    against callers that use the session from another thread.

    Attributes:
        host: Server host
        port: Server port
        loop: EventLoop the stream is scheduled on
        username: Name used to join, empty until join_chat()
        state: Current ConnectionState
        delimiter: Frame delimiter, None for write-boundary framing
    """

    def __init__(self, host: str = 'localhost', port: int = 9999,
                 loop: Optional[EventLoop] = None,
                 stream_factory: Optional[Callable] = None,
                 delimiter: Optional[bytes] = None):
        self.host = host
        self.port = port
        self.loop = loop or EventLoop()
        self.stream_factory = stream_factory or SocketStream
        self.delimiter = delimiter
        self.username = ''
        self.state = ConnectionState.IDLE
        self.stream = None
        self.read_buffer = bytearray()
        self._observer_ref = None
        self._join_pending = False
        self._lock = threading.RLock()

    @property
    def observer(self):
        """The registered observer, or None if unset or garbage collected"""
        if self._observer_ref is None:
            return None
        return self._observer_ref()

    @observer.setter
    def observer(self, observer):
        self._observer_ref = None if observer is None else weakref.ref(observer)

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    def connect(self) -> bool:
        """
        Open the stream to the server.

        Returns:
            bool: True if connecting started, False if the session was not idle
        """
        with self._lock:
            if self.state is not ConnectionState.IDLE:
                logging.warning(f"connect() ignored, session is {self.state.name}")
                return False

            self.stream = self.stream_factory(self.host, self.port)
            self.stream.delegate = self.handle_event
            self.stream.schedule(self.loop)
            self._set_state(ConnectionState.CONNECTING)
            logging.info(f"Connecting to {self.host}:{self.port}")
            self.stream.open()
            return True

    def join_chat(self, username: str) -> bool:
        """
        Join the chat room as username.

        The join frame is written immediately when the stream is open,
        otherwise as soon as it opens.

        Returns:
            bool: False if the session has already closed or failed
        """
        with self._lock:
            if self.state in TERMINAL_STATES or self.state is ConnectionState.CLOSING:
                logging.warning(f"join_chat() ignored, session is {self.state.name}")
                return False

            self.username = username
            if self.state is ConnectionState.OPEN:
                return self._write(protocol.FrameKind.JOIN, username)
            self._join_pending = True
            return True

    def send(self, message: str) -> bool:
        """
        Send a chat message.

        Returns:
            bool: True if the frame was handed to the stream
        """
        with self._lock:
            if self.state is not ConnectionState.OPEN:
                logging.warning(f"send() ignored, session is {self.state.name}")
                return False
            return self._write(protocol.FrameKind.MESSAGE, message)

    def close(self):
        """Close the session. Safe to call in any state, any number of times."""
        with self._lock:
            if self.state in TERMINAL_STATES:
                return
            if self.state is not ConnectionState.IDLE:
                self._set_state(ConnectionState.CLOSING)
            self._release()
            self._set_state(ConnectionState.CLOSED)
            logging.info(f"Chat session with {self.host}:{self.port} closed")

    def handle_event(self, stream, event: StreamEvent):
        """Stream delegate: react to a readiness notification"""
        with self._lock:
            if stream is not self.stream or self.state in TERMINAL_STATES:
                logging.debug(f"Ignoring stale {event.name} in state {self.state.name}")
                return

            if event is StreamEvent.OPEN_COMPLETED:
                self._stream_opened()
            elif event is StreamEvent.HAS_BYTES_AVAILABLE:
                self._read_available_bytes()
            elif event is StreamEvent.HAS_SPACE_AVAILABLE:
                logging.debug("Stream has space available")
            elif event is StreamEvent.END_ENCOUNTERED:
                self._end_encountered()
            elif event is StreamEvent.ERROR_OCCURRED:
                self._fail(stream.stream_error or OSError("Unknown stream error"))
            else:
                logging.debug(f"Unhandled stream event {event}")

    def _stream_opened(self):
        if self.state is not ConnectionState.CONNECTING:
            return
        self._set_state(ConnectionState.OPEN)
        logging.info(f"Connected to {self.host}:{self.port}")
        if self._join_pending:
            self._join_pending = False
            self._write(protocol.FrameKind.JOIN, self.username)

    def _read_available_bytes(self):
        if self.state is not ConnectionState.OPEN:
            logging.debug(f"Not reading in state {self.state.name}")
            return

        while self.state is ConnectionState.OPEN and self.stream.has_bytes_available:
            try:
                chunk = self.stream.read(MAX_READ_LENGTH)
            except OSError as e:
                self._fail(e)
                return
            if not chunk:
                break
            logging.debug(f"Read {len(chunk)} bytes")
            self.read_buffer += chunk
            self._process_buffer()

    def _process_buffer(self, final: bool = False):
        messages, remainder = protocol.decode_messages(
            self.read_buffer, self.username, self.delimiter, final)
        self.read_buffer = bytearray(remainder)
        for message in messages:
            # The observer may have closed the session
            if self.state is not ConnectionState.OPEN:
                break
            self._deliver(message)

    def _deliver(self, message: Message):
        observer = self.observer
        if observer is None:
            logging.debug(f"No observer for message from {message.username}")
            return
        observer.received(message)

    def _end_encountered(self):
        logging.info("Server closed the connection")
        if self.read_buffer:
            self._process_buffer(final=True)
        if self.state in TERMINAL_STATES:
            return
        self._set_state(ConnectionState.CLOSING)
        self._release()
        self._set_state(ConnectionState.CLOSED)

    def _write(self, kind: protocol.FrameKind, payload: str) -> bool:
        data = protocol.encode_message(kind, payload, self.delimiter)
        try:
            self.stream.write(data)
        except OSError as e:
            self._fail(e)
            return False
        logging.debug(f"Sent {kind.value} frame ({len(data)} bytes)")
        return True

    def _fail(self, error: Exception):
        logging.error(f"Chat session with {self.host}:{self.port} failed: {error}")
        self._release()
        self._set_state(ConnectionState.FAILED)
        observer = self.observer
        if observer is not None and hasattr(observer, 'error_occurred'):
            observer.error_occurred(error)

    def _release(self):
        if self.stream is not None:
            self.stream.close()
        self.read_buffer = bytearray()
        self._join_pending = False

    def _set_state(self, state: ConnectionState):
        if state is self.state:
            return
        logging.debug(f"Session state {self.state.name} -> {state.name}")
        self.state = state
        observer = self.observer
        if observer is not None and hasattr(observer, 'state_changed'):
            observer.state_changed(state)
