import argparse
import logging

from ..common.config import HOST, PORT, LOGIN_TIMEOUT, IDLE_TIMEOUT, LOG_FORMAT
from .router import ChatServer


def main(argv=None):
    ap = argparse.ArgumentParser(description="rsacomm relay server")
    ap.add_argument("--host", default=HOST, help="Address to bind")
    ap.add_argument("--port", type=int, default=PORT, help="Port to listen on")
    ap.add_argument("--login-timeout", type=float, default=LOGIN_TIMEOUT,
                    help="Seconds a new connection has to log in")
    ap.add_argument("--idle-timeout", type=float, default=IDLE_TIMEOUT,
                    help="Seconds of inactivity before a session is evicted")
    ap.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, format=LOG_FORMAT)

    server = ChatServer(args.host, args.port,
                        login_timeout=args.login_timeout, idle_timeout=args.idle_timeout)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted, shutting down")
        server.shutdown()


if __name__ == "__main__":
    main()
