# Defaults shared by server and client. Entry points override them with argparse.

HOST = "0.0.0.0"           # address the server binds to
CONNECT_HOST = "127.0.0.1"  # address the client connects to
PORT = 4931
ENC = "utf-8"   # encoding for JSON text

LOGIN_TIMEOUT = 30          # seconds a fresh connection has to log in
IDLE_TIMEOUT = 30 * 60      # seconds of silence before an active session is evicted

RSA_BITS = 2048
KEY_SIZE = 32               # AES-256 key length in bytes

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
