from __future__ import annotations

import os
import ssl
import tempfile


def build_ssl_context(
    *,
    ca_pem: bytes | None = None,
    cert_pem: bytes | None = None,
    key_pem: bytes | None = None,
) -> ssl.SSLContext:
    """Client-side SSL context trusting ca_pem and presenting the optional client pair."""
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    if ca_pem:
        context.load_verify_locations(cadata=ca_pem.decode("ascii"))
    if cert_pem and key_pem:
        # load_cert_chain only reads from disk; keep the material in a private temp dir.
        with tempfile.TemporaryDirectory(prefix="tenantstore-tls-") as workdir:
            cert_path = os.path.join(workdir, "tls.crt")
            key_path = os.path.join(workdir, "tls.key")
            with open(cert_path, "wb") as handle:
                handle.write(cert_pem)
            with open(key_path, "wb") as handle:
                handle.write(key_pem)
            os.chmod(key_path, 0o600)
            context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    return context
