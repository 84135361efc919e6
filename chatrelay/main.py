# chatrelay/main.py
# Entry point for the chatrelay server: sets up logging, builds a relay hub with the
# in-memory collaborators, and runs the WebSocket server from chatrelay.server.

import asyncio  # Provides the event loop the server runs on.
import logging  # Standard logging, configured once here for the whole process.

from chatrelay import config, server
from chatrelay.hub import RelayHub

# Minimum level INFO; timestamp, level name and message on every line.
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def main():
    logging.basicConfig(level=logging.DEBUG if config.DEBUG else logging.INFO, format=LOG_FORMAT)
    logging.info("Attempting to start chatrelay server...")
    try:
        logging.info(f"Using HOST={config.HOST}, PORT={config.PORT}")
        asyncio.run(server.start_server(config.HOST, config.PORT, RelayHub()))
    except KeyboardInterrupt:
        # Ctrl+C in the terminal running the server.
        logging.info("Server stopped manually via KeyboardInterrupt.")
    except Exception:
        # Port already in use or any other failure that escaped the server.
        logging.exception("Server failed to start or crashed")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
