"""
Console entry point for the rsacomm client.
Ask for a name, log in, then read commands from stdin until /quit.
"""
import argparse
import logging
import sys

from ..common.config import CONNECT_HOST, PORT, LOG_FORMAT
from ..common.errors import LoginRejectedError, RSACommError
from ..common.messages import BROADCAST
from .net import NetClient, ClientEvent

LOGIN_WAIT = 10.0

HELP = """commands:
  <text>                  plain broadcast
  /plain <user> <text>    plain message to one user
  /rsa <user> <text>      message encrypted with the user's public key
  /sym <user> <text>      message encrypted with a shared AES key
  /users                  list online users
  /quit                   log out and exit"""


def print_event(event: ClientEvent, value) -> None:
    ''' Render client events on stdout '''
    if event == ClientEvent.NEW_MESSAGE:
        print(f"[{value.source} -> {value.destination}] {value.payload}")
    elif event == ClientEvent.USER_UPDATE:
        print("online: " + (", ".join(value) or "(nobody)"))
    elif event == ClientEvent.LOGOUT:
        print("Disconnected.")
    elif event == ClientEvent.ERROR:
        print(f"! {value}")


def run_command(net: NetClient, line: str) -> bool:
    '''
    Execute one console line. Returns False when the user asked to quit.
    '''
    if not line.startswith("/"):
        net.send_plain(BROADCAST, line)
        return True
    cmd, _, rest = line.partition(" ")
    if cmd == "/quit":
        return False
    if cmd == "/users":
        for name, info in net.peers.snapshot().items():
            flags = ("key" if info.public_key else "no key") + (", aes" if info.has_key else "")
            print(f"  {name} ({flags})")
        return True
    senders = {"/plain": net.send_plain, "/rsa": net.send_rsa, "/sym": net.send_sym}
    to_user, _, text = rest.partition(" ")
    if cmd not in senders or not to_user or not text:
        print(HELP)
        return True
    try:
        senders[cmd](to_user, text)
    except RSACommError as e:
        print(f"! cannot send to {to_user}: {e}")
    return True


def main(argv=None):
    # Parse command line arguments (host, port and optional name)
    ap = argparse.ArgumentParser(description="rsacomm console client")
    ap.add_argument("--host", default=CONNECT_HOST, help="Server host address")
    ap.add_argument("--port", type=int, default=PORT, help="Server port")
    ap.add_argument("--name", help="Login name (asked for when omitted)")
    ap.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING, format=LOG_FORMAT)

    # Loop login until we get a name the server accepts
    name = args.name
    while True:
        if not name:
            name = input("name: ").strip()
            if not name:
                print("Login cancelled. Exiting program.")
                return 1
        # No listener yet: events backlog until we attach the printer
        net = NetClient(args.host, args.port)
        try:
            net.connect()
            net.login(name, timeout=LOGIN_WAIT)
            break
        except LoginRejectedError:
            print("Username already exists. Please try another one.")
            name = None
        except TimeoutError as e:
            print(f"! {e}")
            net.close()
            return 1
        except OSError as e:
            print(f"! connection lost during login: {e}")
            net.close()
            return 1

    print(f"Connected as user: {name}")
    net.add_listener(print_event)
    print(HELP)
    try:
        for line in sys.stdin:
            line = line.rstrip("\n")
            if line and not run_command(net, line):
                break
            if not net.running:
                break
    except KeyboardInterrupt:
        pass
    if net.running:
        net.logout()
    return 0


if __name__ == "__main__":
    sys.exit(main())
