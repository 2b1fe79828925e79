from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed448, ed25519, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID


CLIENT_CERT_VALIDITY = timedelta(days=3650)
CLIENT_KEY_SIZE = 2048
CLIENT_ORGANIZATION = "system:masters"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _signing_algorithm(key) -> hashes.HashAlgorithm | None:
    # EdDSA keys sign without a separate digest.
    if isinstance(key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
        return None
    return hashes.SHA256()


def generate_client_certificate(
    *,
    common_name: str,
    ca_cert_pem: bytes,
    ca_key_pem: bytes,
    validity: timedelta = CLIENT_CERT_VALIDITY,
    now: datetime | None = None,
) -> tuple[bytes, bytes]:
    """Issue an RSA client certificate signed by the given CA; returns (cert_pem, key_pem)."""
    ca_cert = x509.load_pem_x509_certificate(ca_cert_pem)
    ca_key = serialization.load_pem_private_key(ca_key_pem, password=None)
    key = rsa.generate_private_key(public_exponent=65537, key_size=CLIENT_KEY_SIZE)
    issued_at = now or _utc_now()

    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, CLIENT_ORGANIZATION),
        ]
    )
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(int.from_bytes(secrets.token_bytes(16), "big") >> 1)
        # Backdate slightly to tolerate clock skew between operator and backend.
        .not_valid_before(issued_at - timedelta(minutes=5))
        .not_valid_after(issued_at + validity)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.SERVER_AUTH]),
            critical=False,
        )
    )
    certificate = builder.sign(ca_key, _signing_algorithm(ca_key))
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def certificate_common_name(cert_pem: bytes) -> str:
    certificate = x509.load_pem_x509_certificate(cert_pem)
    attributes = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attributes[0].value) if attributes else ""


def is_valid_key_pair(
    cert_pem: bytes,
    key_pem: bytes,
    *,
    valid_until: datetime,
    ca_cert_pem: bytes | None = None,
) -> bool:
    """True when the pair matches, outlives valid_until and, if given, chains to the CA."""
    if not cert_pem or not key_pem:
        return False
    try:
        certificate = x509.load_pem_x509_certificate(cert_pem)
        key = serialization.load_pem_private_key(key_pem, password=None)
    except ValueError:
        return False

    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    der = serialization.Encoding.DER
    if certificate.public_key().public_bytes(der, spki) != key.public_key().public_bytes(der, spki):
        return False
    if certificate.not_valid_after_utc <= valid_until:
        return False
    if ca_cert_pem:
        try:
            certificate.verify_directly_issued_by(x509.load_pem_x509_certificate(ca_cert_pem))
        except (ValueError, TypeError, InvalidSignature):
            return False
    return True
