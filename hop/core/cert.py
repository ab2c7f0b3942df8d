"""
Hop TLS Certificates
====================
Supplies the key/certificate pair used by endpoints with ``https: true``.

Hop only consumes an existing pair; place ``key.pem`` and ``cert.pem`` in the
certificates directory (see ``hop config``). To create a local self-signed
pair::

    openssl req -x509 -newkey rsa:2048 -nodes -days 365 \\
        -subj "/CN=localhost" -keyout key.pem -out cert.pem
"""

from __future__ import annotations

import asyncio
import logging
import ssl
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from hop.config import CERTS_DIR
from hop.errors import CertificateError

logger = logging.getLogger(__name__)

KEY_FILENAME = "key.pem"
CERT_FILENAME = "cert.pem"


@dataclass(frozen=True)
class Certificate:
    """A PEM-encoded private key and certificate chain."""
    key: bytes
    cert: bytes


class FileCertificateProvider:
    """Reads ``key.pem`` and ``cert.pem`` from a directory."""

    def __init__(self, cert_dir: Optional[Path] = None):
        self.cert_dir = Path(cert_dir) if cert_dir else CERTS_DIR

    @property
    def key_file(self) -> Path:
        return self.cert_dir / KEY_FILENAME

    @property
    def cert_file(self) -> Path:
        return self.cert_dir / CERT_FILENAME

    async def get_certificate(self) -> Certificate:
        return await asyncio.to_thread(self._read)

    def _read(self) -> Certificate:
        if not self.key_file.exists() or not self.cert_file.exists():
            raise CertificateError(
                f"TLS key/certificate not found. Expected {self.key_file} and {self.cert_file}"
            )
        try:
            return Certificate(
                key=self.key_file.read_bytes(),
                cert=self.cert_file.read_bytes(),
            )
        except OSError as e:
            raise CertificateError(f"Failed to read certificate: {e}") from e


def build_server_context(certificate: Certificate) -> ssl.SSLContext:
    """Create a server-side SSLContext from in-memory PEM bytes."""
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    # load_cert_chain only accepts file paths
    with tempfile.TemporaryDirectory(prefix="hop-tls-") as tmp:
        key_path = Path(tmp) / KEY_FILENAME
        cert_path = Path(tmp) / CERT_FILENAME
        key_path.write_bytes(certificate.key)
        key_path.chmod(0o600)
        cert_path.write_bytes(certificate.cert)
        try:
            ctx.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
        except ssl.SSLError as e:
            raise CertificateError(f"Invalid TLS key/certificate: {e}") from e
    return ctx
