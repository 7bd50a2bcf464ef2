"""
Stream Transport

A single-threaded run loop over the selectors module and a non-blocking
TCP stream that reports readiness events to a delegate, in the manner of
a run-loop scheduled stream pair.
"""

import errno
import logging
import os
import selectors
import socket
import time
from collections import deque
from enum import Enum, auto
from typing import Callable, Optional


class StreamEvent(Enum):
    """Readiness notifications a stream delivers to its delegate"""
    OPEN_COMPLETED = auto()
    HAS_BYTES_AVAILABLE = auto()
    HAS_SPACE_AVAILABLE = auto()
    END_ENCOUNTERED = auto()
    ERROR_OCCURRED = auto()


class EventLoop:
    """
    Reactor dispatching I/O readiness callbacks on the calling thread.

    Attributes:
        selector: The selector used to wait for readiness
        running: True while run() is looping
    """

    def __init__(self, selector: Optional[selectors.BaseSelector] = None):
        self.selector = selector or selectors.DefaultSelector()
        self.running = False
        self._ready = deque()

    def watch(self, fileobj, events: int, callback: Callable[[int], None]):
        """
        Register interest in a file object, replacing any earlier interest.

        Args:
            fileobj: Socket or file with a fileno()
            events: Mask of selectors.EVENT_READ / EVENT_WRITE
            callback: Called with the ready mask
        """
        try:
            self.selector.modify(fileobj, events, callback)
        except KeyError:
            self.selector.register(fileobj, events, callback)

    def unwatch(self, fileobj):
        """Drop all interest in a file object; unknown objects are ignored"""
        try:
            self.selector.unregister(fileobj)
        except (KeyError, ValueError):
            pass

    def add_reader(self, fileobj, callback: Callable[[], None]):
        """Call callback whenever fileobj is readable"""
        self.watch(fileobj, selectors.EVENT_READ, lambda mask: callback())

    def remove_reader(self, fileobj):
        self.unwatch(fileobj)

    def call_soon(self, callback: Callable[[], None]):
        """Run callback at the start of the next loop iteration"""
        self._ready.append(callback)

    def run_once(self, timeout: Optional[float] = None) -> int:
        """
        Dispatch pending callbacks and at most one batch of readiness events.

        Args:
            timeout: Seconds to wait for readiness, None to wait forever

        Returns:
            int: Number of callbacks dispatched
        """
        dispatched = 0
        for _ in range(len(self._ready)):
            self._ready.popleft()()
            dispatched += 1
        if dispatched:
            timeout = 0

        if not self.selector.get_map():
            if timeout:
                time.sleep(timeout)
            return dispatched

        for key, mask in self.selector.select(timeout):
            # An earlier callback in this batch may have unregistered it
            if self.selector.get_map().get(key.fd) is not key:
                continue
            key.data(mask)
            dispatched += 1
        return dispatched

    def run(self, until: Optional[Callable[[], bool]] = None, timeout: float = 0.1):
        """
        Run until stop() is called or until() returns True.

        Args:
            until: Predicate checked before each iteration
            timeout: Maximum seconds blocked per iteration
        """
        self.running = True
        try:
            while self.running and not (until and until()):
                self.run_once(timeout)
        finally:
            self.running = False

    def stop(self):
        self.running = False

    def close(self):
        self.selector.close()
        self._ready.clear()


class SocketStream:
    """
    Non-blocking duplex TCP stream.

    The stream must be scheduled on an EventLoop before it is opened.
    Readiness is reported by calling delegate(stream, event) from the
    loop thread.

    Attributes:
        host: Server host
        port: Server port
        delegate: Callable receiving (stream, StreamEvent)
        stream_error: The OSError that failed the stream, if any
    """

    def __init__(self, host: str, port: int):
        self.host = host
        self.port = port
        self.socket = None
        self.loop = None
        self.delegate = None
        self.stream_error = None
        self.is_open = False
        self.at_end = False
        self.closed = False
        self._outgoing = bytearray()

    def schedule(self, loop: EventLoop):
        self.loop = loop

    def open(self):
        """
        Begin connecting. Completion is reported as OPEN_COMPLETED, failure
        as ERROR_OCCURRED.

        Raises:
            RuntimeError: If the stream has not been scheduled on a loop
        """
        if self.loop is None:
            raise RuntimeError("Stream must be scheduled on an event loop before opening")
        if self.socket is not None or self.closed:
            return

        logging.debug(f"Opening stream to {self.host}:{self.port}")
        try:
            family, type_, proto, _, address = socket.getaddrinfo(
                self.host, self.port, type=socket.SOCK_STREAM)[0]
            self.socket = socket.socket(family, type_, proto)
            self.socket.setblocking(False)
            err = self.socket.connect_ex(address)
        except OSError as e:
            self._fail_soon(e)
            return

        if err not in (0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN):
            self._fail_soon(OSError(err, os.strerror(err)))
            return
        self.loop.watch(self.socket, selectors.EVENT_WRITE, self._on_ready)

    @property
    def has_bytes_available(self) -> bool:
        """True if read() would return data right now"""
        if self.socket is None or self.closed or self.at_end:
            return False
        try:
            return bool(self.socket.recv(1, socket.MSG_PEEK))
        except BlockingIOError:
            return False
        except OSError:
            # Let read() surface the error
            return True

    def read(self, max_length: int) -> bytes:
        """
        Read up to max_length immediately available bytes.

        Returns:
            bytes: The data read, empty if nothing is available

        Raises:
            OSError: If the connection failed
        """
        if self.socket is None or self.closed:
            return b''
        try:
            return self.socket.recv(max_length)
        except BlockingIOError:
            return b''

    def write(self, data: bytes) -> int:
        """
        Write data, queueing whatever the socket cannot take right away.

        Returns:
            int: Number of bytes accepted

        Raises:
            OSError: If the connection failed
        """
        if self.socket is None or self.closed:
            return 0
        self._outgoing += data
        if self.is_open:
            self._flush()
            self._update_interest()
        return len(data)

    def close(self):
        """Close both directions. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        self.delegate = None
        if self.socket is None:
            return

        self.loop.unwatch(self.socket)
        if self.is_open and self._outgoing:
            try:
                self._flush()
            except OSError as e:
                logging.debug(f"Discarding {len(self._outgoing)} unsent bytes: {e}")
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.socket.close()
        logging.debug(f"Closed stream to {self.host}:{self.port}")

    def _flush(self):
        try:
            sent = self.socket.send(self._outgoing)
        except BlockingIOError:
            return
        del self._outgoing[:sent]

    def _update_interest(self):
        events = 0 if self.at_end else selectors.EVENT_READ
        if self._outgoing:
            events |= selectors.EVENT_WRITE
        if events:
            self.loop.watch(self.socket, events, self._on_ready)
        else:
            self.loop.unwatch(self.socket)

    def _on_ready(self, mask: int):
        if not self.is_open:
            err = self.socket.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
            if err:
                self._fail(OSError(err, os.strerror(err)))
                return
            self.is_open = True
            self._update_interest()
            logging.debug(f"Stream to {self.host}:{self.port} is open")
            self._notify(StreamEvent.OPEN_COMPLETED)
            return

        if mask & selectors.EVENT_READ:
            try:
                peek = self.socket.recv(1, socket.MSG_PEEK)
            except BlockingIOError:
                peek = None
            except OSError as e:
                self._fail(e)
                return
            if peek == b'':
                self.at_end = True
                self._update_interest()
                self._notify(StreamEvent.END_ENCOUNTERED)
            elif peek:
                self._notify(StreamEvent.HAS_BYTES_AVAILABLE)

        if mask & selectors.EVENT_WRITE and not self.closed:
            try:
                self._flush()
            except OSError as e:
                self._fail(e)
                return
            if not self._outgoing:
                self._update_interest()
                self._notify(StreamEvent.HAS_SPACE_AVAILABLE)

    def _fail(self, error: OSError):
        self.stream_error = error
        if self.socket is not None:
            self.loop.unwatch(self.socket)
        self._notify(StreamEvent.ERROR_OCCURRED)

    def _fail_soon(self, error: OSError):
        self.stream_error = error
        self.loop.call_soon(lambda: self._notify(StreamEvent.ERROR_OCCURRED))

    def _notify(self, event: StreamEvent):
        if self.closed or self.delegate is None:
            return
        self.delegate(self, event)
