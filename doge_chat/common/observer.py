"""
Session Observers

Notification contract used by a chat session to hand parsed messages
to whatever consumes them (console, GUI, test harness).
"""

import logging
import sys
from .message import Message


class SessionObserver:
    """
    Receives notifications from a chat session.

    Only received() is required. The remaining hooks default to no-ops
    so subclasses override just what they care about. All callbacks are
    invoked synchronously from the event loop thread.
    """

    def received(self, message: Message):
        """Called once per decoded message, in arrival order"""
        raise NotImplementedError

    def state_changed(self, state):
        """Called after every connection state transition"""

    def error_occurred(self, error: Exception):
        """Called when the transport fails and the session gives up"""


class ConsoleObserver(SessionObserver):
    """Prints chat traffic to a text stream"""

    def __init__(self, output=None):
        self.output = output or sys.stdout

    def received(self, message: Message):
        prefix = "(you) " if message.is_from_self else ""
        print(f"{prefix}{message.username}: {message.message}", file=self.output)
        self.output.flush()

    def state_changed(self, state):
        logging.debug(f"Session state is now {state.name}")

    def error_occurred(self, error: Exception):
        print(f"Connection error: {error}", file=self.output)
        self.output.flush()
