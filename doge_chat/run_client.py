"""
Chat Client Runner

Starts the stream protocol chat client.
"""

import sys
from doge_chat.stream_protocol.client import main

if __name__ == "__main__":
    sys.exit(main())
