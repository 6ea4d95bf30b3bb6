#!/usr/bin/env python3
"""
Little TFTP client. Uploads (put) and downloads (get) files in octet mode.

This client accepts these commands to interact with a server.
    $ ltftp <addr> <port>
    $ ltftp <addr> <port> -c get <path>
    $ ltftp <addr> <port> -c put <path>

Libraries used (from Python's standard library):
    os
    sys
    cmd
    socket
    logging
    ipaddress

External libraries used requiring pip install:
    docopt

Source code licensed under GPLv3. Please refer to:
    https://www.gnu.org/licenses/gpl-3.0.en.html
"""

import os
import sys
import cmd
import logging
import ipaddress
from socket import socket, AF_INET, SOCK_DGRAM
from docopt import docopt

from ltftp import (
    INET4Address, TFTPOpcode, TFTPValueError, NetworkError, ProtocolError,
    RemoteError, decode_uint16, dump_packet, is_ascii_printable, pack_rrq,
    pack_wrq,
)
from ltftp_transfer import Session, Sender, Receiver, TransferResult, receive_packet

logger = logging.getLogger(__name__)

HELP_TEXT = """\
list of available commands

    put file - upload file
    get file - download file
    help     - print help
    exit     - quit session
"""


# ##############################################################################
#
# CLIENT SEND AND RECEIVE FILES
#
# ##############################################################################

def client_get_file(session: Session, remote_file: str, local_file: str = None) -> TransferResult:
    """
    Get the remote file given by 'remote_file' through a TFTP RRQ and
    store it in 'local_file'. A failed transfer leaves whatever was
    received on disk.
    """
    if local_file is None:
        local_file = remote_file

    with open(local_file, 'wb') as destination:
        session.send_with_retry(pack_rrq(remote_file))
        logger.info("[%s] read request sent.", session.tag)
        logger.info("[%s] awaiting response ...", session.tag)
        result = Receiver(session, destination).run()

    logger.info("[%s] %s", session.tag, result.describe("received"))
    return result
#:


def client_put_file(session: Session, local_file: str, remote_file: str = None) -> TransferResult:
    """
    Put the local file given by 'local_file' on the server through a
    TFTP WRQ, under the name 'remote_file'.
    """
    if remote_file is None:
        remote_file = local_file

    with open(local_file, 'rb') as source:
        session.send_with_retry(pack_wrq(remote_file))
        logger.info("[%s] write request sent.", session.tag)
        logger.info("[%s] awaiting response ...", session.tag)

        opcode, packet = receive_packet(session)
        if opcode != TFTPOpcode.ACK.value:
            raise ProtocolError(f"Expected an ACK packet, got {dump_packet(packet)}")
        if decode_uint16(packet, 2) != 0:
            raise ProtocolError("Expected first block to be #0")

        result = Sender(session, source).run()

    logger.info("[%s] %s", session.tag, result.describe("sent"))
    return result
#:


# ##############################################################################
#
# INTERACTIVE SHELL
#
# ##############################################################################

class TFTPCmdShell(cmd.Cmd):
    prompt = "> "

    def __init__(self, session: Session, server_addr: INET4Address):
        super().__init__()
        self.session = session
        self.server_addr = server_addr
        self.intro = f"Exchanging files with server '{server_addr[0]}' port {server_addr[1]}\nType help to list commands."

    def run_operation(self, operation, *args) -> bool:
        # every transfer starts from the server address, not from the peer
        #  that answered the previous one
        self.session.peer = self.server_addr
        try:
            operation(self.session, *args)
        except (OSError, TFTPValueError, NetworkError, RemoteError) as ex:
            logger.error("[%s] status: failure (%s)", self.session.tag, ex)
            return False
        logger.info("[%s] status: success", self.session.tag)
        return True

    def get(self, remote_file: str, local_file: str) -> bool:
        if not is_ascii_printable(remote_file):
            print(f"Invalid file name: {remote_file}")
            return False
        return self.run_operation(client_get_file, remote_file, local_file)

    def put(self, local_file: str, remote_file: str) -> bool:
        if not is_ascii_printable(remote_file):
            print(f"Invalid file name: {remote_file}")
            return False
        if not os.path.exists(local_file):
            print(f"File not found: {local_file}")
            return False
        return self.run_operation(client_put_file, local_file, remote_file)

    def do_get(self, arg):
        "get file: Download a file from the server"
        args = arg.split()
        if not args:
            print("Usage: get remote_file [local_file]")
            return
        remote_file = args[0]
        local_file = args[1] if len(args) > 1 else remote_file
        self.get(remote_file, local_file)

    def do_put(self, arg):
        "put file: Upload a file to the server"
        args = arg.split()
        if not args:
            print("Usage: put local_file [remote_file]")
            return
        local_file = args[0]
        remote_file = args[1] if len(args) > 1 else local_file
        self.put(local_file, remote_file)

    def do_help(self, arg):
        "help: Print the list of commands"
        print(HELP_TEXT)

    def do_exit(self, arg):
        "exit: Quit the session"
        return True

    do_q = do_exit

    def do_EOF(self, arg):
        print()
        return True

    def emptyline(self):
        pass  # Do nothing on empty input

    def default(self, line):
        self.do_help(line)

    def postcmd(self, stop, line):
        # a transport failure ends the session
        return stop or not self.session.alive
#:


# ##############################################################################
#
# COMMAND LINE
#
# ##############################################################################

def main(argv=None):
    doc = """\
Little TFTP client.

Usage:
    ltftp [-v] <addr> <port>
    ltftp [-v] <addr> <port> -c (put|get) <path>

Options:
    -h, --help      Show this help message
    -v, --verbose   Dump every received packet
    -c              Run a single command and exit
"""
    args = docopt(doc, argv=argv)

    logging.basicConfig(
        level=logging.DEBUG if args['--verbose'] else logging.INFO,
        format='[%(asctime)s] %(message)s',
        datefmt='%H:%M:%S',
        stream=sys.stderr,
    )

    # Validates server
    try:
        server_ip = str(ipaddress.IPv4Address(args['<addr>']))
    except ValueError:
        print(f"Invalid IPv4 address: {args['<addr>']}", file=sys.stderr)
        sys.exit(1)

    # Validates port
    port_str = args['<port>']
    port = int(port_str) if port_str.isdigit() else -1
    if not (0 <= port < 65536):
        print(f"Invalid port number: {port_str}", file=sys.stderr)
        sys.exit(1)

    try:
        sock = socket(AF_INET, SOCK_DGRAM)
    except OSError as ex:
        print(f"Failed to allocate socket: {ex}", file=sys.stderr)
        sys.exit(1)

    server_addr: INET4Address = (server_ip, port)
    session = Session(sock, peer=server_addr, tag='tftp')
    shell = TFTPCmdShell(session, server_addr)

    with sock:
        if args['-c']:
            # <path> is a single name, spaces included
            path = args['<path>']
            if args['put']:
                shell.put(path, path)
            else:
                shell.get(path, path)
            return

        try:
            shell.cmdloop()
        except KeyboardInterrupt:
            print("\nExiting TFTP client.", file=sys.stderr)
#:


if __name__ == "__main__":
    main()
#:
