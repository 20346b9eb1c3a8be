"""
In-process HTTP/2 peer used in place of a real server.

The peer sits on one end of a socket.socketpair(), answers the connection
preface with a SETTINGS frame and records the header of every frame the
client sends.  It can hang up after a number of CONTINUATION frames to play
a server that defends itself against the flood.  TLSPeerServer puts the
same peer behind a real TLS listener.
"""

import socket
import ssl
import threading

import scapy.contrib.http2 as h2

import h2_frames

HEADERS      = 0x01
SETTINGS     = 0x04
CONTINUATION = 0x09

FLAG_ACK         = 0x01
FLAG_END_HEADERS = 0x04


class MockH2Peer(threading.Thread):
    """
    close_after_continuations: hang up once this many CONTINUATION frames
                               have been read (None keeps reading until EOF).
    first_frame:               frame sent right after the preface, defaults
                               to an empty SETTINGS frame.
    """

    def __init__(self, sock: socket.socket, close_after_continuations=None, first_frame=None) -> None:
        super().__init__(daemon=True)
        self.sock = sock
        self.close_after_continuations = close_after_continuations
        self.first_frame = first_frame if first_frame is not None else h2.H2Frame() / h2.H2SettingsFrame()
        self.preface = b""
        self.frames = []
        self.closed_by_peer = False

    def run(self) -> None:
        reader = h2_frames.FrameReader(self.sock)
        try:
            while len(self.preface) < len(h2_frames.CLIENT_PREFACE):
                chunk = self.sock.recv(len(h2_frames.CLIENT_PREFACE) - len(self.preface))
                if not chunk:
                    return
                self.preface += chunk
            self.sock.sendall(bytes(self.first_frame))

            while True:
                raw_frame = reader.read_raw_frame()
                if raw_frame is None:
                    return
                header, payload = raw_frame
                self.frames.append({
                    "type": header[3],
                    "flags": header[4],
                    "stream_id": int.from_bytes(header[5:9], "big") & 0x7FFFFFFF,
                    "payload": payload,
                })
                if (self.close_after_continuations is not None
                        and len(self.continuations()) >= self.close_after_continuations):
                    self.closed_by_peer = True
                    return
        except OSError:
            return
        finally:
            self.sock.close()

    def stream_frames(self) -> list:
        return [f for f in self.frames if f["stream_id"] != 0]

    def continuations(self) -> list:
        return [f for f in self.frames if f["type"] == CONTINUATION]

    def end_headers_continuations(self) -> list:
        return [f for f in self.continuations() if f["flags"] & FLAG_END_HEADERS]


class PeerFactory:
    """
    Connection factory handed to the flooder/coordinator.  Every call creates
    a socketpair, starts a MockH2Peer on one end and returns the other.
    """

    def __init__(self, **peer_kwargs) -> None:
        self.peer_kwargs = peer_kwargs
        self.peers = {}
        self._lock = threading.Lock()

    def __call__(self, number: int = 0) -> socket.socket:
        client, server = socket.socketpair()
        peer = MockH2Peer(server, **self.peer_kwargs)
        with self._lock:
            self.peers[number] = peer
        peer.start()
        return client

    def join(self, timeout: float = 5.0) -> None:
        for peer in self.peers.values():
            peer.join(timeout)


class TLSPeerServer:
    """
    Listens on 127.0.0.1 with a TLS server context and runs a MockH2Peer on
    every accepted connection, so the flooder can dial it through
    h2_frames.dial like a real server.
    """

    def __init__(self, certfile: str, keyfile: str, alpn_protocols=("h2",), **peer_kwargs) -> None:
        self.context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self.context.load_cert_chain(certfile, keyfile)
        if alpn_protocols:
            self.context.set_alpn_protocols(list(alpn_protocols))
        self.peer_kwargs = peer_kwargs
        self.peers = {}
        self._stop = threading.Event()

        self.listener = socket.create_server(("127.0.0.1", 0))
        self.listener.settimeout(0.1)
        self.port = self.listener.getsockname()[1]
        self.url = "https://127.0.0.1:{}/".format(self.port)

        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()

    def _accept_loop(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self.listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            try:
                tls_conn = self.context.wrap_socket(conn, server_side=True)
            except OSError:
                conn.close()
                continue
            peer = MockH2Peer(tls_conn, **self.peer_kwargs)
            self.peers[len(self.peers)] = peer
            peer.start()

    def join(self, timeout: float = 5.0) -> None:
        for peer in list(self.peers.values()):
            peer.join(timeout)

    def close(self) -> None:
        self._stop.set()
        self._thread.join(1)
        self.listener.close()
