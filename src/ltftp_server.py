#!/usr/bin/env python3
"""
Little TFTP server.

Serves one transfer at a time from a single UDP socket. The first datagram
 of a transfer decides the peer for the rest of it: read requests are served
 by the Sender role, write requests by the Receiver role. File names are
 confined to the served directory.

This server is invoked with the following command:
    $ ltftpd <addr> <port> [<root>]

Libraries used (from Python's standard library):
    os
    sys
    socket
    select
    logging
    ipaddress

External libraries used requiring pip install:
    docopt

Source code licensed under GPLv3. Please refer to:
    https://www.gnu.org/licenses/gpl-3.0.en.html
"""

import os
import sys
import select
import logging
import ipaddress
from socket import socket, AF_INET, SOCK_DGRAM, SOL_SOCKET, SO_REUSEADDR
from docopt import docopt

from ltftp import (
    TFTPOpcode, TransferMode, TFTPValueError, NetworkError, TransportError,
    RequestError, AccessViolation, IllegalOperation, InvalidMode,
    PacketTooShort, RemoteError, check_min_length, dump_packet, unpack_opcode,
    error_for, parse_transfer_mode, unpack_rq,
)
from ltftp_transfer import Session, Sender, Receiver, TransferResult

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0  # lets Ctrl+C through while idle


# ##############################################################################
#
# PATH VALIDATION
#
# ##############################################################################

def validate_path(filename: str) -> None:
    """
    Refuses absolute names and any name with a '../' segment.
    """
    if filename.startswith('/') or '../' in filename:
        raise AccessViolation(f"Path not allowed: {filename}")
#:


def resolve_path(root: str, filename: str) -> str:
    validate_path(filename)
    # Checks safe path. Whatever survives validate_path must still land
    #  inside root once joined and normalized.
    local_file = os.path.abspath(os.path.join(root, filename))
    root_abs = os.path.abspath(root)
    if os.path.commonpath([local_file, root_abs]) != root_abs:
        raise AccessViolation(f"Path not allowed: {filename}")
    return local_file
#:


def _request_mode(session: Session, mode: str | None) -> TransferMode:
    if mode is None:
        logger.info("[%s] assuming octet mode", session.tag)
        return TransferMode.OCTET
    transfer_mode = parse_transfer_mode(mode)
    logger.info("[%s] mode : %s", session.tag, transfer_mode.value)
    return transfer_mode
#:


# ##############################################################################
#
# REQUEST HANDLERS
#
# ##############################################################################

def handle_rrq(session: Session, packet: bytes, root: str = '.') -> TransferResult:
    filename, mode = unpack_rq(packet)
    logger.info("[%s] path : %s", session.tag, filename)

    transfer_mode = _request_mode(session, mode)
    if transfer_mode is TransferMode.NETASCII:
        logger.warning("[%s] netascii requested, serving raw octets", session.tag)

    local_file = resolve_path(root, filename)
    with open(local_file, 'rb') as source:
        result = Sender(session, source).run()
    logger.info("[%s] %s", session.tag, result.describe("sent"))
    return result
#:


def handle_wrq(session: Session, packet: bytes, root: str = '.') -> TransferResult:
    filename, mode = unpack_rq(packet)
    logger.info("[%s] path : %s", session.tag, filename)

    transfer_mode = _request_mode(session, mode)
    if transfer_mode is not TransferMode.OCTET:
        raise InvalidMode(f"Unsupported mode: {mode}")

    local_file = resolve_path(root, filename)
    with open(local_file, 'wb') as destination:
        session.send_ack(0)
        logger.info("[%s] transfer acknowledged.", session.tag)
        result = Receiver(session, destination).run()
    logger.info("[%s] %s", session.tag, result.describe("received"))
    return result
#:


def handle_request(session: Session, root: str = '.') -> TransferResult:
    """
    Reads the first datagram of a new transfer and serves it. Any failure
    is raised to the caller, which reports it to the peer.
    """
    packet = session.receive()
    logger.info("[%s] accepted peer %s:%d", session.tag, *session.peer)

    if not check_min_length(2, len(packet), session.tag):
        raise PacketTooShort(f"Received {len(packet)} bytes, expected 2 at least")

    # unknown opcodes raise IllegalOperation
    opcode = unpack_opcode(packet)
    match opcode:
        case TFTPOpcode.WRQ:
            logger.info("[%s] handling write request ...", session.tag)
            return handle_wrq(session, packet, root)
        case TFTPOpcode.RRQ:
            logger.info("[%s] handling read request ...", session.tag)
            return handle_rrq(session, packet, root)
        case _:
            raise IllegalOperation(f"Packet has been ignored: {dump_packet(packet)}")
#:


def serve_request(session: Session, root: str = '.') -> bool:
    """
    Serves one transfer, answering the peer with an ERROR packet when it
    fails. Returns True on success.
    """
    try:
        handle_request(session, root)
    except (OSError, TFTPValueError, NetworkError, RequestError, RemoteError) as ex:
        logger.error("[%s] status: failure (%s)", session.tag, ex)
        # an ERROR is never answered, and a dead socket can't carry one
        if isinstance(ex, RemoteError) or not session.alive or session.peer is None:
            return False
        try:
            session.send_error(error_for(ex))
        except TransportError as send_ex:
            logger.error("[%s] %s", session.tag, send_ex)
        return False
    logger.info("[%s] status: success", session.tag)
    return True
#:


def serve_forever(session: Session, root: str = '.') -> None:
    while session.alive:
        readable, _, _ = select.select([session.sock], [], [], POLL_INTERVAL)
        if readable:
            serve_request(session, root)
#:


# ##############################################################################
#
# COMMAND LINE
#
# ##############################################################################

def main():
    doc = """\
Little TFTP server.

Usage:
    ltftpd [-v] <addr> <port> [<root>]

Options:
    -h, --help      Show this help message
    -v, --verbose   Dump every received packet
    <root>          Directory to serve [default: .]
"""
    args = docopt(doc)

    logging.basicConfig(
        level=logging.DEBUG if args['--verbose'] else logging.INFO,
        format='[%(asctime)s] %(message)s',
        datefmt='%H:%M:%S',
        stream=sys.stderr,
    )

    # Validates docopt args
    try:
        addr = str(ipaddress.IPv4Address(args['<addr>']))
    except ValueError:
        print(f"Invalid IPv4 address: {args['<addr>']}", file=sys.stderr)
        sys.exit(1)

    port_str = args['<port>']
    port = int(port_str) if port_str.isdigit() else -1
    if not (0 <= port < 65536):
        print(f"Invalid port number: {port_str}", file=sys.stderr)
        sys.exit(1)

    root = args['<root>'] or os.getcwd()
    if not os.path.isdir(root):
        print(f"Directory '{root}' does not exist.", file=sys.stderr)
        sys.exit(1)
    logger.info("[lsrv] serving files from %s", os.path.abspath(root))

    try:
        sock = socket(AF_INET, SOCK_DGRAM)
        sock.setsockopt(SOL_SOCKET, SO_REUSEADDR, True)
        sock.bind((addr, port))
    except OSError as ex:
        print(f"Unable to bind to '{addr}' port '{port}': {ex}", file=sys.stderr)
        sys.exit(1)

    logger.info("[lsrv] listening on %s port %d ...", addr, sock.getsockname()[1])
    session = Session(sock, tag='lsrv')
    try:
        serve_forever(session, root)
    except KeyboardInterrupt:
        print("\nExiting TFTP server..", file=sys.stderr)
    finally:
        sock.close()
    logger.info("[lsrv] server stopped.")
#:


if __name__ == "__main__":
    main()
#:
