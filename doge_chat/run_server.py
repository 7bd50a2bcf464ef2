"""
Chat Server Runner

Starts the chat relay server.
"""

import argparse
import logging
import sys
import threading
from doge_chat.common.server_base import ChatRelayServer, FRAME_DELIMITER


def main(argv=None):
    """Main entry point for the chat server"""
    parser = argparse.ArgumentParser(description="Chat relay server")
    parser.add_argument("--host", default="localhost", help="Server host")
    parser.add_argument("--port", type=int, default=9999, help="Server port")
    parser.add_argument(
        "--framing",
        choices=["line", "raw"],
        default="raw",
        help="Frame boundary: one frame per write, or newline terminated"
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    delimiter = FRAME_DELIMITER if args.framing == "line" else None
    server = ChatRelayServer((args.host, args.port), delimiter)
    thread = threading.Thread(target=server.serve_forever)
    thread.daemon = True

    try:
        logging.info(f"Chat relay server starting on {args.host}:{args.port}")
        thread.start()
        # Keep main thread running
        while thread.is_alive():
            threading.Event().wait(1.0)
        logging.error("Server thread died unexpectedly")
        return 1
    except KeyboardInterrupt:
        logging.info("Shutting down server...")
        server.shutdown()
        server.server_close()
        thread.join(timeout=5.0)
        logging.info("Server shutdown complete")
        return 0


if __name__ == "__main__":
    sys.exit(main())
