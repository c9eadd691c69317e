#!/usr/bin/env python3
"""
dnswire.py – minimal DNS message model and wire codec.
Parses the header + question section of a query and encodes a reply
carrying A answers. Names are kept as dotted bytes, case as received.
"""

import struct
from dataclasses import dataclass, field
from ipaddress import IPv4Address

TYPE_A      = 1
TYPE_AAAA   = 28
CLASS_IN    = 1
DEFAULT_TTL = 60

HEADER_LEN  = 12
MAX_LABEL   = 63
MAX_NAME    = 255


class DNSFormatError(ValueError):
    """Raised on truncated or otherwise malformed DNS data."""


@dataclass
class Header:
    id: int
    flags: int
    num_questions: int = 0
    num_answers: int = 0
    num_authorities: int = 0
    num_additional: int = 0


@dataclass
class Question:
    name: bytes     # eecs388.org
    type_: int      # A
    class_: int     # IN


@dataclass
class Answer:
    name: bytes
    type_: int
    class_: int
    ttl: int
    ip: IPv4Address

    @property
    def data(self) -> bytes:
        return self.ip.packed


@dataclass
class Packet:
    header: Header
    questions: list[Question] = field(default_factory=list)


# ------------------------------------------------------------------
def decode_name(buf: bytes, offset: int) -> tuple[bytes, int]:
    """Unpack a DNS name (length-prefixed labels, compression allowed).

    Returns the dotted name and the offset just past it in the original
    position (not past a pointer target).
    """
    parts, jumped, seen = [], False, set()
    end = offset
    while True:
        if offset >= len(buf):
            raise DNSFormatError("name runs past end of packet")
        length = buf[offset]
        if length == 0:
            offset += 1
            break
        if length & 0xC0 == 0xC0:               # compression pointer
            if offset + 1 >= len(buf):
                raise DNSFormatError("truncated compression pointer")
            if not jumped:
                end = offset + 2
            offset = ((length & 0x3F) << 8) | buf[offset + 1]
            if offset in seen:
                raise DNSFormatError("compression loop")
            seen.add(offset)
            jumped = True
            continue
        if length & 0xC0:
            raise DNSFormatError(f"unsupported label type 0x{length:02x}")
        offset += 1
        if offset + length > len(buf):
            raise DNSFormatError("label runs past end of packet")
        parts.append(buf[offset:offset + length])
        offset += length
    return b".".join(parts), end if jumped else offset


def encode_name(name: bytes) -> bytes:
    # google.com -> b'\x06google\x03com\x00'
    if isinstance(name, str):
        name = name.encode("ascii")
    name = name.rstrip(b".")
    encoded = b""
    for part in name.split(b".") if name else []:
        if not part or len(part) > MAX_LABEL:
            raise DNSFormatError(f"bad label {part!r} in {name!r}")
        encoded += bytes([len(part)]) + part
    encoded += b"\x00"
    if len(encoded) > MAX_NAME:
        raise DNSFormatError(f"name too long: {name!r}")
    return encoded


def parse_packet(data: bytes) -> Packet:
    if len(data) < HEADER_LEN:
        raise DNSFormatError(f"packet too short ({len(data)} bytes)")
    header = Header(*struct.unpack("!HHHHHH", data[:HEADER_LEN]))

    questions, offset = [], HEADER_LEN
    for _ in range(header.num_questions):
        name, offset = decode_name(data, offset)
        if offset + 4 > len(data):
            raise DNSFormatError("question missing QTYPE/QCLASS")
        type_, class_ = struct.unpack("!HH", data[offset:offset + 4])
        offset += 4
        questions.append(Question(name, type_, class_))
    return Packet(header, questions)


def answer_to_bytes(answer: Answer) -> bytes:
    rdata = answer.data
    return (encode_name(answer.name)
            + struct.pack("!HHIH", answer.type_, answer.class_, answer.ttl, len(rdata))
            + rdata)


def build_reply(query: Packet, answers: list[Answer]) -> bytes:
    """Encode a NOERROR response to `query` carrying `answers`."""
    opcode_rd = query.header.flags & 0x7900     # opcode + RD
    flags = 0x8080 | opcode_rd                  # QR=1, RA=1
    header = struct.pack("!HHHHHH", query.header.id, flags,
                         len(query.questions), len(answers), 0, 0)

    body = b""
    for q in query.questions:
        body += encode_name(q.name) + struct.pack("!HH", q.type_, q.class_)
    for a in answers:
        body += answer_to_bytes(a)
    return header + body
