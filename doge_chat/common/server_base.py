"""
Chat Relay Server

A small threaded server speaking the stream protocol. Clients join with
"iam:<name>" and post with "msg:<text>"; every message is relayed to all
joined clients as "<name>:<text>". Frames end at the write boundary, or
at a delimiter when the server is started with one. Used for local runs
and integration tests.
"""

import socketserver
import threading
import logging
from typing import Dict, Optional

FRAME_DELIMITER = b'\n'
READ_SIZE = 4096


class ChatRoom:
    """
    Shared room state.

    Attributes:
        members (Dict[socket, str]): Joined connections and their usernames
        delimiter (Optional[bytes]): Appended to every relayed frame
        lock (threading.Lock): Guards members
    """

    def __init__(self, delimiter: Optional[bytes] = None):
        """Initialize an empty room."""
        self.members: Dict[object, str] = {}
        self.delimiter = delimiter
        self.lock = threading.Lock()
        # One writer at a time per connection so frames never interleave
        self._send_locks: Dict[object, threading.Lock] = {}

    def join(self, connection, username: str):
        with self.lock:
            self.members[connection] = username
            self._send_locks.setdefault(connection, threading.Lock())
        logging.info(f"{username} has joined")

    def leave(self, connection) -> Optional[str]:
        with self.lock:
            username = self.members.pop(connection, None)
            self._send_locks.pop(connection, None)
        if username:
            logging.info(f"{username} has left")
        return username

    def username_for(self, connection) -> Optional[str]:
        with self.lock:
            return self.members.get(connection)

    def broadcast(self, username: str, text: str) -> int:
        """
        Relay a message to every member.

        Args:
            username: Name of the author
            text: Message body

        Returns:
            int: Number of members the message was delivered to
        """
        frame = f"{username}:{text}".encode('utf-8') + (self.delimiter or b'')
        with self.lock:
            recipients = [(connection, self._send_locks[connection])
                          for connection in self.members]

        delivered = 0
        for connection, send_lock in recipients:
            try:
                with send_lock:
                    connection.sendall(frame)
                delivered += 1
            except OSError as e:
                name = self.leave(connection)
                logging.warning(f"Dropped member {name}: {e}")
        logging.debug(f"Relayed message from {username} to {delivered} members")
        return delivered


class ChatRelayRequestHandler(socketserver.BaseRequestHandler):
    """Handler for one stream protocol client"""

    def setup(self):
        """Get reference to the shared room"""
        self.room = self.server.room
        self.delimiter = self.room.delimiter
        self.buffer = b''

    def handle(self):
        """Handle incoming client connection."""
        logging.info(f"New client connection from {self.client_address}")

        while True:
            try:
                data = self.request.recv(READ_SIZE)
            except OSError as e:
                logging.error(f"Error handling client: {e}")
                break
            if not data:
                break

            if self.delimiter is None:
                frames = [data]
            else:
                self.buffer += data
                *frames, self.buffer = self.buffer.split(self.delimiter)
            for frame in frames:
                self.handle_frame(frame)

        logging.info(f"Client connection closed from {self.client_address}")

    def handle_frame(self, frame: bytes):
        """Handle a single frame"""
        try:
            kind, separator, payload = frame.decode('utf-8').rstrip('\r').partition(':')
        except UnicodeDecodeError as e:
            logging.warning(f"Ignoring undecodable frame: {e}")
            return
        if not separator:
            logging.warning(f"Ignoring malformed frame: {frame!r}")
            return

        if kind == 'iam':
            self.room.join(self.request, payload)
        elif kind == 'msg':
            username = self.room.username_for(self.request)
            if username is None:
                logging.warning(f"Message from {self.client_address} before join")
                return
            self.room.broadcast(username, payload)
        else:
            logging.warning(f"Unknown frame kind: {kind}")

    def finish(self):
        self.room.leave(self.request)


class ThreadedTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Threaded TCP server to handle multiple clients."""
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, RequestHandlerClass, delimiter=None):
        """Initialize server with a shared ChatRoom instance"""
        super().__init__(server_address, RequestHandlerClass)
        self.room = ChatRoom(delimiter)


class ChatRelayServer(ThreadedTCPServer):
    """Chat server relaying stream protocol messages"""
    def __init__(self, server_address, delimiter=None):
        super().__init__(server_address, ChatRelayRequestHandler, delimiter)
