from rich.console import Console
import argparse
import logging

import utils

import health_pb2
import health_pb2_grpc

import os
import sys
import threading
from concurrent import futures

import grpc
from grpc_reflection.v1alpha import reflection
import psutil


DEFAULT_PORT = 8443
DEFAULT_CERT = './certs/server.crt'
DEFAULT_KEY = './certs/server.key'
TICKER_INTERVAL = 2.0


class HealthService(health_pb2_grpc.HealthServiceServicer):
    """Reports CPU usage of this process and memory usage of the host."""

    def __init__(self, cpu_interval=1.0):
        self.cpu_interval = cpu_interval
        self.logger = logging.getLogger(__name__)

    def Check(self, request, context):
        try:
            process = psutil.Process(os.getpid())
            cpu_percent = process.cpu_percent(interval=self.cpu_interval)
        except psutil.Error as e:
            self.logger.exception(e)
            context.abort(grpc.StatusCode.INTERNAL, 'error retrieving process CPU usage: {}'.format(e))

        try:
            virtual_memory = psutil.virtual_memory()
        except (psutil.Error, OSError) as e:
            self.logger.exception(e)
            context.abort(grpc.StatusCode.INTERNAL, 'error retrieving virtual memory usage: {}'.format(e))

        return health_pb2.HealthCheckResponse(
            cpu_usage_percent=cpu_percent,
            memory_usage_percent=virtual_memory.used / virtual_memory.total * 100,
        )


def build_server(service, address, credentials=None, max_workers=10):
    """Return (server, bound_port); the server is not started yet."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=max_workers))
    health_pb2_grpc.add_HealthServiceServicer_to_server(service, server)
    reflection.enable_server_reflection((health_pb2.SERVICE_NAME, reflection.SERVICE_NAME), server)

    if credentials is None:
        port = server.add_insecure_port(address)
    else:
        port = server.add_secure_port(address, credentials)
    if port == 0:
        raise RuntimeError('failed to bind gRPC server on {}'.format(address))
    return server, port


class HealthMonitorServer:
    def __init__(self, argv=None):
        self.console = Console()
        self.args = self.initialize_argparse(argv)
        self.logger = logging.getLogger(__name__)
        self.stop_event = threading.Event()

    def initialize_argparse(self, argv):
        parser = argparse.ArgumentParser(description='gRPC health endpoint reporting its own CPU and memory usage, used to watch a server while it is flooded.')

        parser.add_argument('--port', type=int, default=DEFAULT_PORT, help='Port to listen on (default: {}).'.format(DEFAULT_PORT))
        parser.add_argument('--cert', default=DEFAULT_CERT, help='Path to the TLS certificate (default: {}).'.format(DEFAULT_CERT))
        parser.add_argument('--key', default=DEFAULT_KEY, help='Path to the TLS private key (default: {}).'.format(DEFAULT_KEY))
        parser.add_argument('--interval', type=float, default=TICKER_INTERVAL, help='Seconds between console CPU readings (default: {}).'.format(TICKER_INTERVAL))
        parser.add_argument('--insecure', action='store_true', help='Serve without TLS.')

        return parser.parse_args(argv)

    def load_credentials(self):
        with open(self.args.key, 'rb') as file:
            private_key = file.read()
        with open(self.args.cert, 'rb') as file:
            certificate_chain = file.read()
        return grpc.ssl_server_credentials(((private_key, certificate_chain),))

    def print_cpu_usage(self, interval):
        try:
            process = psutil.Process(os.getpid())
        except psutil.Error as e:
            self.logger.exception(e)
            utils.cprint(self, 'Error getting process info: {}'.format(e), 'failure')
            return

        while not self.stop_event.is_set():
            try:
                percent = process.cpu_percent(interval=interval)
            except psutil.Error as e:
                self.logger.exception(e)
                utils.cprint(self, 'Error retrieving process CPU usage: {}'.format(e), 'failure', end='\r')
                self.stop_event.wait(interval)
                continue
            utils.cprint(self, 'Process CPU Usage: {:.2f}%'.format(percent), 'info', end='\r')

    def start(self):
        credentials = None
        if not self.args.insecure:
            try:
                credentials = self.load_credentials()
            except OSError as e:
                self.logger.exception(e)
                utils.cprint(self, 'failed to create credentials: {}'.format(e), 'failure')
                return 1

        try:
            server, port = build_server(HealthService(), '0.0.0.0:{}'.format(self.args.port), credentials)
        except RuntimeError as e:
            self.logger.exception(e)
            utils.cprint(self, 'failed to listen: {}'.format(e), 'failure')
            return 1

        ticker = threading.Thread(target=self.print_cpu_usage, args=(self.args.interval,), name='cpu-ticker', daemon=True)
        ticker.start()

        server.start()
        self.logger.info('Starting gRPC server on port %d', port)
        utils.cprint(self, 'Starting gRPC server on port {}'.format(port), 'success')
        try:
            server.wait_for_termination()
        except KeyboardInterrupt:
            utils.cprint(self, 'Shutting down...', 'ack')
        finally:
            self.stop_event.set()
            server.stop(grace=None)
        return 0


def main(argv=None):
    logging.basicConfig(filename='logs.log', encoding='utf-8', level=logging.DEBUG)
    return HealthMonitorServer(argv).start()


if __name__ == '__main__':
    sys.exit(main())
