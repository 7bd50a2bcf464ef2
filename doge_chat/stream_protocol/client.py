"""
Stream Protocol Chat Client

A command-line client: joins the room, prints incoming messages and
sends every line typed on stdin.
"""

import argparse
import logging
import sys
from ..common.observer import ConsoleObserver
from . import protocol
from .session import ChatSession, ConnectionState, TERMINAL_STATES
from .transport import EventLoop

QUIT_COMMAND = '/quit'


class ChatClient:
    """Interactive chat client driven by a single event loop"""

    def __init__(self, host: str = 'localhost', port: int = 9999,
                 delimiter=None, input_stream=None, output=None):
        self.loop = EventLoop()
        self.session = ChatSession(host, port, loop=self.loop, delimiter=delimiter)
        self.input_stream = input_stream or sys.stdin
        self.console = ConsoleObserver(output)
        self.session.observer = self.console

    def handle_line(self, line: str):
        """Handle one line of user input"""
        line = line.rstrip('\r\n')
        if line == QUIT_COMMAND:
            self.session.close()
        elif line:
            self.session.send(line)

    def _read_input(self):
        line = self.input_stream.readline()
        if not line:
            # stdin closed
            self.session.close()
            return
        self.handle_line(line)

    def run(self, username: str) -> bool:
        """
        Connect, join as username and process events until the session ends.

        Returns:
            bool: False if the session ended in failure
        """
        self.session.connect()
        self.session.join_chat(username)
        self.loop.add_reader(self.input_stream, self._read_input)
        try:
            self.loop.run(until=lambda: self.session.state in TERMINAL_STATES)
        finally:
            self.loop.remove_reader(self.input_stream)
            self.session.close()
            self.loop.close()
        return self.session.state is not ConnectionState.FAILED


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Chat client (stream protocol)")
    parser.add_argument("--host", default="localhost", help="Server host")
    parser.add_argument("--port", type=int, default=9999, help="Server port")
    parser.add_argument("--username", help="Name to join the chat with")
    parser.add_argument(
        "--framing",
        choices=["line", "raw"],
        default="raw",
        help="Frame boundary: one frame per write, or newline terminated"
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    username = args.username or input("Username: ").strip()
    if not username:
        print("A username is required")
        return 1

    delimiter = protocol.FRAME_DELIMITER if args.framing == "line" else None
    client = ChatClient(args.host, args.port, delimiter=delimiter)
    print(f"Joining {args.host}:{args.port} as {username}. Type {QUIT_COMMAND} to leave.")
    try:
        return 0 if client.run(username) else 1
    except KeyboardInterrupt:
        print("\nLeaving chat...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
