"""
Little TFTP is a small implementation of the TFTP protocol (RFC 1350) used to
 transfer files between a client and a server over UDP.

This module is the common repository for the client and server programs.
It holds the protocol constants, the packet codec and the error taxonomy
 shared by the transfer engine, the request dispatcher and the command line
 front-ends.

It is not intended to be run directly, but rather imported by the
 ltftp_transfer, ltftp_client and ltftp_server modules.

Source code licensed under GPLv3. Please refer to:
    https://www.gnu.org/licenses/gpl-3.0.en.html
"""

import errno
import string
import struct
import logging
from enum import Enum

logger = logging.getLogger(__name__)

# ##############################################################################
#
# PROTOCOL CONSTANTS AND TYPES
#
# ##############################################################################

BLOCK_SIZE = 512             # in bytes, payload of every non terminal DATA
TIMEOUT = 1.0                # seconds to wait for a reply before resending
DEFAULT_MODE = "octet"       # the only mode transferred as-is
DEFAULT_BUFFER_SIZE = 65536  # large enough for any UDP datagram
MAX_PARAMS = 16              # max NUL terminated fields in a RRQ/WRQ
MAX_PARAM_LEN = 256          # max length of one of those fields
MAX_DISCARDED_PACKETS = 100  # consecutive stale datagrams before giving up
MAX_BLOCK_NUMBER = 0xFFFF    # block numbers wrap silently after this

# TFTP message opcodes
# https://datatracker.ietf.org/doc/html/rfc1350
class TFTPOpcode(Enum):
    RRQ   = 1   # Read request
    WRQ   = 2   # Write request
    DATA  = 3   # Data transfer
    ACK   = 4   # Acknowledge
    ERROR = 5   # Error packet; terminates the transfer it refers to
#:


class TransferMode(Enum):
    NETASCII = "netascii"
    OCTET    = "octet"
#:


INET4Address = tuple[str, int]  # UDP address => IPv4 and port


# ##############################################################################
#
# ERRORS AND EXCEPTIONS
#
# ##############################################################################

class TFTPError(Enum):
    NOT_DEFINED         = (0, "Not defined, see error message (if any).")
    FILE_NOT_FOUND      = (1, "File not found.")
    ACCESS_VIOLATION    = (2, "Access violation.")
    DISK_FULL           = (3, "Disk full or allocation exceeded.")
    ILLEGAL_OPERATION   = (4, "Illegal TFTP operation.")
    UNKNOWN_TRANSFER_ID = (5, "Unknown transfer ID.")
    FILE_EXISTS         = (6, "File already exists.")
    NO_SUCH_USER        = (7, "No such user.")

    @property
    def code(self) -> int:
        return self.value[0]

    @property
    def message(self) -> str:
        return self.value[1]

    @classmethod
    def from_code(cls, code: int) -> "TFTPError | None":
        for error in cls:
            if error.code == code:
                return error
        return None
#:


class TFTPValueError(ValueError):
    """
    A value that can't be encoded into, or decoded from, a TFTP packet.
    """
    tftp_error = TFTPError.NOT_DEFINED
#:

class BufferTooSmall(TFTPValueError):
    pass
#:

class MissingTerminator(TFTPValueError):
    tftp_error = TFTPError.ILLEGAL_OPERATION
#:

class TooManyFields(TFTPValueError):
    pass
#:

class FieldTooLong(TFTPValueError):
    pass
#:


class NetworkError(Exception):
    """
    Any network error, like a failed send or receive.
    """
    tftp_error = TFTPError.NOT_DEFINED
#:

class TransportError(NetworkError):
    """
    The socket failed while sending, receiving or waiting for a reply.
    Fatal to the session: no further transfers are attempted on it.
    """
#:

class ProtocolError(NetworkError):
    """
    A protocol error like unexpected or invalid opcode, wrong block
    number, or any other invalid protocol parameter. Fatal to the
    current transfer only.
    """
    tftp_error = TFTPError.ILLEGAL_OPERATION
#:

class PacketTooShort(ProtocolError):
    tftp_error = TFTPError.NOT_DEFINED
#:


class RequestError(Exception):
    """
    A read or write request the server refuses to serve.
    """
    tftp_error = TFTPError.NOT_DEFINED
#:

class IllegalOperation(RequestError):
    tftp_error = TFTPError.ILLEGAL_OPERATION
#:

class InvalidMode(IllegalOperation):
    pass
#:

class AccessViolation(RequestError):
    tftp_error = TFTPError.ACCESS_VIOLATION
#:


class RemoteError(Exception):
    """
    An error sent by the peer. It may be caused because a read/write
    can't be processed. Read and write errors during file transmission
    also cause this message to be sent, and transmission is then
    terminated.
    """
    def __init__(self, error_code: int, error_msg: str):
        super().__init__(f'TFTP Error {error_code}: {error_msg}')
        self.error_code = error_code
        self.error_msg = error_msg
    #:
#:


def error_for(exc: BaseException) -> TFTPError:
    """
    Maps a failed transfer to the error code reported back to the peer.
    """
    if isinstance(exc, (TFTPValueError, NetworkError, RequestError)):
        return exc.tftp_error
    if isinstance(exc, PermissionError):
        return TFTPError.ACCESS_VIOLATION
    if isinstance(exc, FileNotFoundError):
        return TFTPError.FILE_NOT_FOUND
    if isinstance(exc, OSError) and exc.errno in (errno.EDQUOT, errno.ENOSPC):
        return TFTPError.DISK_FULL
    return TFTPError.NOT_DEFINED
#:


# ##############################################################################
#
# PACKET PACKING AND UNPACKING
#
# ##############################################################################
# All multi-byte integers travel in network byte order ('!H').

def encode_uint16(value: int) -> bytes:
    return struct.pack('!H', value & MAX_BLOCK_NUMBER)
#:

def decode_uint16(data: bytes, offset: int = 0) -> int:
    return struct.unpack_from('!H', data, offset)[0]
#:

def next_block(block: int) -> int:
    return (block + 1) & MAX_BLOCK_NUMBER
#:


def check_min_length(expected: int, actual: int, prefix: str = 'tftp') -> bool:
    """
    Guards a decode against undersized datagrams. A False result is a
    protocol violation, the caller must not retry the receive.
    """
    if actual < expected:
        logger.error("[%s] received %d bytes, expected %d bytes at least.",
                     prefix, actual, expected)
        return False
    return True
#:


def encode_header(opcode: TFTPOpcode | int, params=(), limit: int = DEFAULT_BUFFER_SIZE) -> bytes:
    """
    Packs the opcode followed by every parameter as a NUL terminated
    string, in the given order.
    """
    if limit < 2:
        raise BufferTooSmall(f"Header needs 2 bytes, limit is {limit}")

    opcode_value = opcode.value if isinstance(opcode, TFTPOpcode) else opcode
    header = bytearray(encode_uint16(opcode_value))
    for param in params:
        param_bytes = param.encode('ascii')
        if len(header) + len(param_bytes) + 1 > limit:
            raise BufferTooSmall(f"Header exceeds {limit} bytes")
        header += param_bytes + b'\x00'
    return bytes(header)
#:


def split_request_params(raw: bytes) -> list[str]:
    """
    Splits the payload that follows a RRQ/WRQ opcode on NUL boundaries.
    A trailing field without terminator is kept as is.
    """
    if b'\x00' not in raw:
        raise MissingTerminator("Request parameters are not NUL terminated")

    fields = raw.split(b'\x00')
    if fields[-1] == b'':
        fields.pop()

    if len(fields) > MAX_PARAMS:
        raise TooManyFields(f"Request has more than {MAX_PARAMS} fields")

    params = []
    for field in fields:
        if len(field) >= MAX_PARAM_LEN:
            raise FieldTooLong(f"Request field reaches {MAX_PARAM_LEN} bytes")
        try:
            params.append(field.decode('ascii'))
        except UnicodeDecodeError:
            raise TFTPValueError(f"Request field is not ASCII: {field!r}")
    return params
#:


def parse_transfer_mode(mode: str) -> TransferMode:
    try:
        return TransferMode(mode.lower())
    except ValueError:
        raise InvalidMode(f"Unsupported mode: {mode}")
#:


def pack_rrq(filename: str, mode: str = DEFAULT_MODE) -> bytes:
    return _pack_rq(TFTPOpcode.RRQ, filename, mode)
#:

def pack_wrq(filename: str, mode: str = DEFAULT_MODE) -> bytes:
    return _pack_rq(TFTPOpcode.WRQ, filename, mode)
#:

def _pack_rq(opcode: TFTPOpcode, filename: str, mode: str) -> bytes:
    if not is_ascii_printable(filename):
        raise TFTPValueError(f"Invalid filename: {filename}. Not ASCII printable")
    return encode_header(opcode, (filename, mode))
#:


def unpack_rq(packet: bytes) -> tuple[str, str | None]:
    """
    Returns the filename and mode of a RRQ or WRQ. Mode is None when the
    request carries only a filename.
    """
    params = split_request_params(packet[2:])
    if not params or not params[0]:
        raise IllegalOperation("File path not found in request")
    mode = params[1] if len(params) > 1 else None
    return params[0], mode
#:


def unpack_opcode(packet: bytes) -> TFTPOpcode:
    if not check_min_length(2, len(packet)):
        raise PacketTooShort(f"Packet of {len(packet)} bytes has no opcode")
    opcode = decode_uint16(packet)
    try:
        return TFTPOpcode(opcode)
    except ValueError:
        raise IllegalOperation(f"Invalid opcode: {opcode}")
#:


def pack_dat(block_number: int, data: bytes) -> bytes:
    if len(data) > BLOCK_SIZE:
        raise TFTPValueError(f"Data length exceeds {BLOCK_SIZE} bytes")
    return encode_uint16(TFTPOpcode.DATA.value) + encode_uint16(block_number) + data
#:

def unpack_dat(packet: bytes) -> tuple[int, bytes]:
    opcode, block_number = struct.unpack('!HH', packet[:4])
    if opcode != TFTPOpcode.DATA.value:
        raise ProtocolError(f"Invalid opcode: {opcode}. Expected DATA")
    return block_number, packet[4:]
#:


def pack_ack(block_number: int) -> bytes:
    return struct.pack('!HH', TFTPOpcode.ACK.value, block_number & MAX_BLOCK_NUMBER)
#:

def unpack_ack(packet: bytes) -> int:
    opcode, block_number = struct.unpack('!HH', packet[:4])
    if opcode != TFTPOpcode.ACK.value:
        raise ProtocolError(f"Invalid opcode: {opcode}. Expected ACK")
    return block_number
#:


def pack_err(error: TFTPError, error_msg: str | None = None) -> bytes:
    if error_msg is None:
        error_msg = error.message
    if not is_ascii_printable(error_msg):
        raise TFTPValueError(f"Invalid error message: {error_msg}. Not ASCII printable")
    return encode_uint16(TFTPOpcode.ERROR.value) + encode_header(error.code, (error_msg,))
#:

def unpack_err(packet: bytes) -> tuple[int, str]:
    opcode, error_num = struct.unpack('!HH', packet[:4])
    if opcode != TFTPOpcode.ERROR.value:
        raise ProtocolError(f"Invalid opcode: {opcode}. Expected ERROR")
    error_msg = packet[4:].split(b'\x00', 1)[0]
    return error_num, error_msg.decode('ascii', errors='replace')
#:


def dump_packet(packet: bytes) -> str:
    """
    Describes a received datagram in a single line, for diagnostics.
    """
    if len(packet) < 2:
        return f"SHORT ({len(packet)} bytes)"

    opcode = decode_uint16(packet)
    match opcode:
        case TFTPOpcode.RRQ.value | TFTPOpcode.WRQ.value:
            return TFTPOpcode(opcode).name
        case TFTPOpcode.DATA.value if len(packet) >= 4:
            return f"DATA block #{decode_uint16(packet, 2)} size {len(packet) - 4}"
        case TFTPOpcode.ACK.value if len(packet) >= 4:
            return f"ACK block #{decode_uint16(packet, 2)}"
        case TFTPOpcode.ERROR.value if len(packet) >= 4:
            code, message = unpack_err(packet)
            error = TFTPError.from_code(code)
            description = error.message if error else "Unknown"
            if message:
                return f"ERROR code {code} {description} desc {message}"
            return f"ERROR code {code} {description}"
        case TFTPOpcode.DATA.value | TFTPOpcode.ACK.value | TFTPOpcode.ERROR.value:
            return f"{TFTPOpcode(opcode).name} truncated ({len(packet)} bytes)"
        case _:
            return f"UNKNOWN opcode {opcode} size {len(packet)}"
#:


################################################################################
##
##      COMMON UTILITIES
##
################################################################################

def is_ascii_printable(txt: str) -> bool:
    return set(txt).issubset(string.printable)
#:
