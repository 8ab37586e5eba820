"""Shared fixtures: loopback upstream servers for end-to-end proxy tests."""

import datetime
import gzip
import ipaddress
import socket
import ssl
import threading
import time
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509 import ExtendedKeyUsageOID, NameOID


class UpstreamHandler(BaseHTTPRequestHandler):
    """Scriptable upstream; every request is recorded on the server."""

    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def __getattr__(self, name):
        if name.startswith("do_"):
            return self._handle
        raise AttributeError(name)

    def _read_body(self) -> bytes:
        length = int(self.headers.get("Content-Length", 0) or 0)
        return self.rfile.read(length) if length else b""

    def _reply(self, status, body=b"", headers=None):
        self.send_response(status)
        for key, val in headers or []:
            self.send_header(key, val)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _handle(self):
        body = self._read_body()
        self.server.requests.append({
            "method": self.command,
            "path": self.path,
            "headers": list(self.headers.items()),
            "body": body,
        })
        parsed = urllib.parse.urlsplit(self.path)
        parts = parsed.path.strip("/").split("/")
        route = parts[0]

        if route == "redirect":
            remaining = int(parts[1])
            if remaining <= 0:
                self._reply(200, b"done")
            else:
                self._reply(301, headers=[("Location", f"/redirect/{remaining - 1}")])
        elif route == "redirect-to":
            target = urllib.parse.parse_qs(parsed.query)["url"][0]
            self._reply(302, headers=[("Location", target)])
        elif route == "redirect-cookie":
            self._reply(302, headers=[("Location", "/ok"), ("Set-Cookie", "evil=1; Path=/")])
        elif route == "see-other":
            self._reply(303, headers=[("Location", "/ok")])
        elif route == "status":
            self._reply(int(parts[1]), f"status {parts[1]}".encode())
        elif route == "echo":
            self._reply(200, body, headers=[("Content-Type", self.headers.get("Content-Type", "text/plain"))])
        elif route == "cookies":
            self._reply(200, b"ok", headers=[("Set-Cookie", "a=1"), ("Set-Cookie", "b=2"), ("X-Custom", "yes")])
        elif route == "gzip":
            self._reply(200, gzip.compress(b"compressed payload"), headers=[("Content-Encoding", "gzip")])
        elif route == "chunked":
            self.send_response(200)
            self.send_header("Transfer-Encoding", "chunked")
            self.end_headers()
            for chunk in (b"hello ", b"chunked ", b"world"):
                self.wfile.write(f"{len(chunk):x}\r\n".encode() + chunk + b"\r\n")
            self.wfile.write(b"0\r\n\r\n")
        elif route == "truncated":
            self.send_response(200)
            self.send_header("Content-Length", "100")
            self.end_headers()
            self.wfile.write(b"short")
            self.wfile.flush()
            self.close_connection = True
        elif route == "slow":
            time.sleep(2)
            self._reply(200, b"late")
        else:
            self._reply(200, b"ok", headers=[("Content-Type", "text/plain")])


class Upstream:
    def __init__(self, ssl_context=None):
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), UpstreamHandler)
        self.server.daemon_threads = True
        self.server.requests = []
        self.scheme = "http"
        if ssl_context is not None:
            # Handshake happens on accept; a failed one drops the connection.
            self.server.socket = ssl_context.wrap_socket(self.server.socket, server_side=True)
            self.scheme = "https"
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    @property
    def port(self) -> int:
        return self.server.server_address[1]

    @property
    def url(self) -> str:
        return f"{self.scheme}://127.0.0.1:{self.port}"

    @property
    def requests(self) -> list:
        return self.server.requests

    def start(self):
        self.thread.start()
        return self

    def stop(self):
        self.server.shutdown()
        self.server.server_close()


@pytest.fixture
def upstream():
    server = Upstream().start()
    yield server
    server.stop()


@pytest.fixture
def other_upstream():
    server = Upstream().start()
    yield server
    server.stop()


@pytest.fixture
def closed_port():
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


# ── TLS ──────────────────────────────────────────────────────────────────────


class LoopbackPKI:
    """Throwaway CA plus a server certificate for 127.0.0.1 and a client certificate."""

    def __init__(self, directory: Path):
        self.directory = directory
        self.ca_key = ec.generate_private_key(ec.SECP256R1())
        self.ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "proximity test CA")])
        ca_cert = self._build(self.ca_name, self.ca_key.public_key(), ca=True)
        self.ca_file = self._write("ca.pem", ca_cert)

        server_key = ec.generate_private_key(ec.SECP256R1())
        server_cert = self._build(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "127.0.0.1")]),
            server_key.public_key(),
            sans=[x509.IPAddress(ipaddress.ip_address("127.0.0.1"))],
            usage=ExtendedKeyUsageOID.SERVER_AUTH,
        )
        self.server_cert = self._write("server.pem", server_cert)
        self.server_key = self._write_key("server.key", server_key)

        client_key = ec.generate_private_key(ec.SECP256R1())
        client_cert = self._build(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "proximity client")]),
            client_key.public_key(),
            usage=ExtendedKeyUsageOID.CLIENT_AUTH,
        )
        self.client_cert = self._write("client.pem", client_cert)
        self.client_key = self._write_key("client.key", client_key)

    def _build(self, subject, public_key, ca=False, sans=None, usage=None):
        now = datetime.datetime.now(datetime.timezone.utc)
        builder = x509.CertificateBuilder()
        builder = builder.serial_number(x509.random_serial_number())
        builder = builder.subject_name(subject)
        builder = builder.issuer_name(self.ca_name)
        builder = builder.public_key(public_key)
        builder = builder.not_valid_before(now - datetime.timedelta(days=2))
        builder = builder.not_valid_after(now + datetime.timedelta(days=30))
        builder = builder.add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        builder = builder.add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        builder = builder.add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(self.ca_key.public_key()), critical=False
        )
        if ca:
            builder = builder.add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ), critical=True)
        if sans:
            builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
        if usage is not None:
            builder = builder.add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        return builder.sign(private_key=self.ca_key, algorithm=hashes.SHA256())

    def _write(self, name: str, cert: x509.Certificate) -> str:
        path = self.directory / name
        path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        return str(path)

    def _write_key(self, name: str, key) -> str:
        path = self.directory / name
        path.write_bytes(key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ))
        return str(path)

    def server_context(self, require_client_cert: bool = False) -> ssl.SSLContext:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.load_cert_chain(self.server_cert, self.server_key)
        if require_client_cert:
            ctx.verify_mode = ssl.CERT_REQUIRED
            ctx.load_verify_locations(cafile=self.ca_file)
        return ctx


@pytest.fixture(scope="session")
def pki(tmp_path_factory):
    return LoopbackPKI(tmp_path_factory.mktemp("pki"))


@pytest.fixture
def tls_upstream(pki):
    server = Upstream(pki.server_context()).start()
    yield server
    server.stop()


@pytest.fixture
def mtls_upstream(pki):
    server = Upstream(pki.server_context(require_client_cert=True)).start()
    yield server
    server.stop()
