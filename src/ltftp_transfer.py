"""
Transfer engine shared by the Little TFTP client and server.

A Session carries the socket and the current peer of one exchange. On top of
 it, send_with_retry keeps a datagram going out until the peer answers, and
 the Sender and Receiver roles move a file in lock-step, one DATA block
 acknowledged at a time. Client GET and the server write handler use the
 Receiver; client PUT and the server read handler use the Sender.

Source code licensed under GPLv3. Please refer to:
    https://www.gnu.org/licenses/gpl-3.0.en.html
"""

import select
import socket
import logging
from dataclasses import dataclass, field
from typing import BinaryIO

from ltftp import (
    BLOCK_SIZE, TIMEOUT, DEFAULT_BUFFER_SIZE, MAX_DISCARDED_PACKETS,
    INET4Address, TFTPOpcode, TransportError, ProtocolError, PacketTooShort,
    RemoteError, check_min_length, decode_uint16, next_block, pack_dat,
    pack_ack, pack_err, unpack_ack, unpack_dat, unpack_err, dump_packet,
    TFTPError,
)

logger = logging.getLogger(__name__)


# ##############################################################################
#
# RELIABLE DATAGRAM TRANSPORT
#
# ##############################################################################

def _wait_readable(sock: socket.socket, timeout: float) -> bool:
    if hasattr(select, 'poll'):
        poller = select.poll()
        poller.register(sock, select.POLLIN)
        events = poller.poll(int(timeout * 1000))
        for _, mask in events:
            if mask & (select.POLLHUP | select.POLLNVAL):
                raise TransportError("Socket hang-up while awaiting reply")
        return bool(events)
    # Windows has no poll()
    readable, _, _ = select.select([sock], [], [], timeout)
    return bool(readable)
#:


def send_with_retry(sock: socket.socket, payload: bytes, peer: INET4Address,
                    timeout: float = TIMEOUT) -> int:
    """
    Sends 'payload' to 'peer' and resends it every 'timeout' seconds until
    the socket becomes readable. There is no retry ceiling: a silent peer
    keeps the datagram going out forever. The reply is left on the socket
    for the caller to receive.
    """
    attempt = 0
    while True:
        try:
            sent = sock.sendto(payload, peer)
            if _wait_readable(sock, timeout):
                return sent
        except OSError as ex:
            raise TransportError(f"Failed to send data: {ex}") from ex
        attempt += 1
        logger.debug("Timeout awaiting reply from %s (attempt %d). Resending...",
                     peer, attempt)
#:


# ##############################################################################
#
# SESSION
#
# ##############################################################################

@dataclass
class Session:
    """
    Context of one exchange: the socket, the address of the peer (rebound
    to the source of every received datagram) and a liveness flag, cleared
    on the first fatal transport error.
    """
    sock: socket.socket
    peer: INET4Address | None = None
    tag: str = 'tftp'
    timeout: float = TIMEOUT
    alive: bool = field(default=True)

    def send(self, payload: bytes) -> int:
        try:
            return self.sock.sendto(payload, self.peer)
        except OSError as ex:
            self.alive = False
            raise TransportError(f"Failed to send data: {ex}") from ex
    #:

    def send_with_retry(self, payload: bytes) -> int:
        try:
            return send_with_retry(self.sock, payload, self.peer, self.timeout)
        except TransportError:
            self.alive = False
            raise
    #:

    def receive(self) -> bytes:
        try:
            packet, self.peer = self.sock.recvfrom(DEFAULT_BUFFER_SIZE)
        except OSError as ex:
            self.alive = False
            raise TransportError(f"Failed to receive data: {ex}") from ex
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[%s] received packet: %s", self.tag, dump_packet(packet))
        return packet
    #:

    def send_ack(self, block: int) -> int:
        return self.send(pack_ack(block))
    #:

    def send_error(self, error: TFTPError, error_msg: str | None = None) -> int:
        return self.send(pack_err(error, error_msg))
    #:
#:


# ##############################################################################
#
# TRANSFER STATE MACHINE
#
# ##############################################################################

@dataclass
class TransferResult:
    blocks: int = 0
    nbytes: int = 0
    discarded: int = 0

    def describe(self, verb: str) -> str:
        return f"{verb} {self.blocks} blocks ({self.nbytes} bytes)"
    #:
#:


def receive_packet(session: Session) -> tuple[int, bytes]:
    """
    Receives the next datagram of a transfer, returning its opcode. An
    ERROR from the peer ends the transfer.
    """
    packet = session.receive()
    if not check_min_length(4, len(packet), session.tag):
        raise PacketTooShort(f"Received {len(packet)} bytes, expected 4 at least")

    opcode = decode_uint16(packet)
    if opcode == TFTPOpcode.ERROR.value:
        error_code, error_msg = unpack_err(packet)
        raise RemoteError(error_code, error_msg)
    return opcode, packet
#:


def _discard(session: Session, result: TransferResult, discarded: int, reason: str) -> int:
    discarded += 1
    result.discarded += 1
    logger.warning("[%s] %s - ignored.", session.tag, reason)
    if discarded > MAX_DISCARDED_PACKETS:
        raise ProtocolError(f"Gave up after {discarded} consecutive stale packets")
    return discarded
#:


def await_ack(session: Session, block: int, result: TransferResult | None = None) -> None:
    """
    Waits for the ACK of 'block'. ACKs for any other block are stale and
    dropped without resending anything.
    """
    if result is None:
        result = TransferResult()
    discarded = 0
    while True:
        opcode, packet = receive_packet(session)
        if opcode != TFTPOpcode.ACK.value:
            raise ProtocolError(f"Expected an ACK packet, got {dump_packet(packet)}")

        ack_block = unpack_ack(packet)
        if ack_block == block:
            return
        discarded = _discard(session, result, discarded,
                             f"ACK: expected block #{block}, got #{ack_block}")
#:


@dataclass
class Sender:
    """
    Sends 'source' as a sequence of DATA blocks starting at 'first_block'.
    """
    session: Session
    source: BinaryIO
    first_block: int = 1

    def run(self) -> TransferResult:
        result = TransferResult()
        block = self.first_block
        while True:
            data = self.source.read(BLOCK_SIZE)
            self.session.send_with_retry(pack_dat(block, data))
            await_ack(self.session, block, result)

            result.blocks += 1
            result.nbytes += len(data)
            logger.debug("[%s] progress: sent %d blocks", self.session.tag, result.blocks)

            # a short block, even an empty one, ends the transfer
            if len(data) < BLOCK_SIZE:
                return result
            block = next_block(block)
    #:
#:


@dataclass
class Receiver:
    """
    Writes the DATA blocks received from the peer to 'destination',
    acknowledging each one, starting with 'first_block'.
    """
    session: Session
    destination: BinaryIO
    first_block: int = 1

    def run(self) -> TransferResult:
        result = TransferResult()
        expected = self.first_block
        discarded = 0
        while True:
            opcode, packet = receive_packet(self.session)
            if opcode != TFTPOpcode.DATA.value:
                discarded = _discard(self.session, result, discarded,
                                     f"Expected a DATA packet, got {dump_packet(packet)}")
                continue

            block, data = unpack_dat(packet)
            if block != expected:
                # lost ACK, the peer resent the block we already wrote
                if result.blocks and next_block(block) == expected:
                    self.session.send_ack(block)
                discarded = _discard(self.session, result, discarded,
                                     f"DATA: expected block #{expected}, got #{block}")
                continue

            if len(data) > BLOCK_SIZE:
                raise ProtocolError(f"DATA block #{block} carries {len(data)} bytes")

            self.destination.write(data)
            self.session.send_ack(block)
            discarded = 0

            result.blocks += 1
            result.nbytes += len(data)
            logger.debug("[%s] progress: received %d blocks", self.session.tag, result.blocks)

            if len(data) < BLOCK_SIZE:
                return result
            expected = next_block(expected)
    #:
#:
