"""
pytest configuration.

Every test runs against the in-process MockH2Peer from helpers.py, except the
live run in test_fleet.py which needs a real target.  The TLS tests
generate a throwaway certificate with the openssl CLI and are skipped when it
is not installed.

CLI options
-----------
--target-url : https URL of a server you are allowed to flood, for example
               one started with ``h2-health-server``.  Without it the live
               test is skipped.

Example:

    python3 -m pytest tests/ -v --target-url=https://localhost:8443
"""

import io
import shutil
import subprocess

import pytest
from rich.console import Console

from helpers import PeerFactory, TLSPeerServer


def pytest_addoption(parser):
    parser.addoption(
        "--target-url",
        action="store",
        default=None,
        help="Run the live flood test against this https URL.",
    )


@pytest.fixture
def target_url(request):
    url = request.config.getoption("--target-url")
    if url is None:
        pytest.skip("--target-url not given")
    return url


@pytest.fixture
def console():
    """A rich console writing into a buffer; read it back with console.file.getvalue()."""
    return Console(file=io.StringIO(), width=200)


@pytest.fixture
def peers():
    factory = PeerFactory()
    yield factory
    factory.join()


@pytest.fixture
def defensive_peers():
    """Peers that hang up after three CONTINUATION frames, like a patched server."""
    factory = PeerFactory(close_after_continuations=3)
    yield factory
    factory.join()


# ── TLS peers ─────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def tls_certificate(tmp_path_factory):
    """Self-signed P-256 certificate for 127.0.0.1, made with the openssl CLI."""
    if shutil.which("openssl") is None:
        pytest.skip("openssl not found")

    keypair_dir = tmp_path_factory.mktemp("keypair")
    cert_path = str(keypair_dir / "server.crt")
    key_path = str(keypair_dir / "server.key")
    result = subprocess.run(
        [
            "openssl", "req", "-x509",
            "-newkey", "ec",
            "-pkeyopt", "ec_paramgen_curve:P-256",
            "-days", "1",
            "-nodes",
            "-keyout", key_path,
            "-out",    cert_path,
            "-subj",   "/CN=127.0.0.1",
        ],
        capture_output=True,
    )
    if result.returncode != 0:
        raise RuntimeError(
            f"openssl certificate generation failed:\n{result.stderr.decode()}"
        )
    return cert_path, key_path


@pytest.fixture
def tls_peers(tls_certificate):
    server = TLSPeerServer(*tls_certificate)
    yield server
    server.close()
    server.join()


@pytest.fixture
def defensive_tls_peers(tls_certificate):
    """TLS peers that hang up after three CONTINUATION frames."""
    server = TLSPeerServer(*tls_certificate, close_after_continuations=3)
    yield server
    server.close()
    server.join()
