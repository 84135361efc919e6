# chatrelay/config.py
# This file centralizes configuration settings for the chatrelay messaging and call-signaling server.

import os # Import the 'os' module to help construct file paths reliably across different operating systems.

# --- Network Configuration ---

# HOST: The IP address the WebSocket server should listen on.
# - '0.0.0.0': Listen on all available network interfaces.
# - '127.0.0.1' or 'localhost': Listen only on the local machine.
HOST = '0.0.0.0'

# PORT: The TCP port number the WebSocket server should listen on.
PORT = 5678

# --- SSL Configuration ---

# CERT_DIR: The directory where SSL certificate files (cert.pem, key.pem) are expected to be located.
# Calculated relative to this config file's location (chatrelay/ -> ../certs/).
CERT_DIR = os.path.join(os.path.dirname(__file__), '..', 'certs')
CERT_FILE = os.path.join(CERT_DIR, 'cert.pem')
KEY_FILE = os.path.join(CERT_DIR, 'key.pem')

# ENABLE_SSL: Serve Secure WebSockets (WSS). If the certificate or key cannot be loaded
# the server logs the problem and falls back to plain WS.
ENABLE_SSL = True

# --- Rate Limiting Configuration ---

# Connection attempts allowed from one IP address within CONNECTION_WINDOW_SECONDS.
MAX_CONNECTIONS_PER_IP = 10
CONNECTION_WINDOW_SECONDS = 60

# Frames allowed from one established connection within MESSAGE_WINDOW_SECONDS.
MAX_MESSAGES_PER_CONNECTION = 20
MESSAGE_WINDOW_SECONDS = 5

# MAX_MESSAGE_SIZE: Largest inbound WebSocket frame accepted, in bytes.
# Attachments travel as URLs, so frames stay small; SDP offers are the largest payloads.
MAX_MESSAGE_SIZE = 64 * 1024

# --- Messaging Configuration ---

# HISTORY_PAGE_SIZE: Number of most recent messages returned when a client loads a conversation.
HISTORY_PAGE_SIZE = 100

# MAX_TEXT_LENGTH: Longest chat text accepted in a single message.
MAX_TEXT_LENGTH = 4000

# MAX_ATTACHMENT_SIZE_BYTES: Largest attachment a message may reference (50 MB).
MAX_ATTACHMENT_SIZE_BYTES = 50 * 1024 * 1024

# MAX_GROUP_NAME_LENGTH: Longest group name accepted by JoinGroup / LeaveGroup / SendMessageToGroup.
MAX_GROUP_NAME_LENGTH = 64

# --- Identity Configuration ---

# AUTO_ENROLL_USERS: When a connection registers an identity the user directory does not know yet,
# enroll it. Set to False when the directory is fed by an external account system.
AUTO_ENROLL_USERS = True

# --- Debugging Configuration ---

# DEBUG: Verbose console logging of relayed payloads. Connections, errors and warnings
# are logged regardless of this flag.
DEBUG = False
