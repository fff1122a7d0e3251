#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import base64
import os
import tempfile
from typing import Tuple, List, Optional

from cryptography import x509 as cx509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, rsa

from request_builder import RequestConfig


# -----------------------------------------------------------------------------
# Key generation and serialization
# -----------------------------------------------------------------------------

def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=int(key_size))


def private_key_to_pem(key) -> bytes:
    """Unencrypted PKCS#8 PEM, the form web servers load without a passphrase."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_private_key_file(path: str):
    with open(path, "rb") as f:
        return serialization.load_pem_private_key(f.read(), password=None)


# -----------------------------------------------------------------------------
# CSR
# -----------------------------------------------------------------------------

def build_csr(config: RequestConfig, key) -> cx509.CertificateSigningRequest:
    """Build and sign a PKCS#10 request with the subject and SANs of `config`."""
    builder = (
        cx509.CertificateSigningRequestBuilder()
        .subject_name(config.to_x509_name())
        .add_extension(config.to_san_extension(), critical=False)
    )
    return builder.sign(key, hashes.SHA256())


def csr_to_pem(csr: cx509.CertificateSigningRequest) -> str:
    return csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


# -----------------------------------------------------------------------------
# Files
# -----------------------------------------------------------------------------

def atomic_write(path: str, data: bytes, mode: int = 0o644) -> None:
    """Write through a temp file in the same directory, then replace `path` (created with `mode`)."""
    dirn = os.path.dirname(os.path.abspath(path)) or "."
    with tempfile.NamedTemporaryFile(dir=dirn, delete=False) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = tmp.name
    try:
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError:
        os.unlink(tmp_path)
        raise


# -----------------------------------------------------------------------------
# Certificate parsing helpers
# -----------------------------------------------------------------------------

_PEM_BEGIN = b"-----BEGIN CERTIFICATE-----"
_PEM_END = b"-----END CERTIFICATE-----"


def is_pem_blob(data: bytes) -> bool:
    return _PEM_BEGIN in data and _PEM_END in data


def load_certificate_bytes(data: bytes) -> cx509.Certificate:
    """Load a certificate from PEM, DER, or raw base64 DER."""
    if is_pem_blob(data):
        return cx509.load_pem_x509_certificate(data)
    try:
        return cx509.load_der_x509_certificate(data)
    except ValueError:
        # CA pages sometimes answer base64 DER without headers
        try:
            der = base64.b64decode(data, validate=False)
            return cx509.load_der_x509_certificate(der)
        except ValueError as e:
            raise ValueError(f"Data not recognized as X.509 certificate: {e}") from e


def certificate_to_pem_text(data: bytes) -> str:
    """PEM text of a certificate body; bodies that do not parse are returned decoded as-is."""
    if is_pem_blob(data):
        return data.decode("ascii", errors="replace")
    try:
        cert = load_certificate_bytes(data)
    except ValueError:
        return data.decode("utf-8", errors="replace")
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def get_public_key_info(cert: cx509.Certificate) -> Tuple[str, Optional[int]]:
    """Return ('RSA', bits) | ('EC(name)', None) | ('DSA', bits) | (class_name, None)."""
    pk = cert.public_key()
    if isinstance(pk, rsa.RSAPublicKey):
        return ("RSA", pk.key_size)
    if isinstance(pk, ec.EllipticCurvePublicKey):
        return (f"EC({pk.curve.name})", None)
    if isinstance(pk, dsa.DSAPublicKey):
        return ("DSA", pk.key_size)
    return (pk.__class__.__name__, None)


def extract_cn_and_sans(cert: cx509.Certificate) -> Tuple[str, List[str]]:
    cn_attr = cert.subject.get_attributes_for_oid(cx509.NameOID.COMMON_NAME)
    cn = str(cn_attr[0].value) if cn_attr else ""

    sans_list: List[str] = []
    try:
        san_ext = cert.extensions.get_extension_for_class(cx509.SubjectAlternativeName).value
    except cx509.ExtensionNotFound:
        return cn, sans_list
    for n in san_ext:
        sans_list.append(str(n.value))
    return cn, sans_list


def describe_certificate(data: bytes) -> List[str]:
    """Short human summary of an issued certificate, empty if it cannot be parsed."""
    try:
        cert = load_certificate_bytes(data)
    except ValueError:
        return []
    _, sans = extract_cn_and_sans(cert)
    pk_type, pk_bits = get_public_key_info(cert)
    return [
        f"Subject: {cert.subject.rfc4514_string()}",
        f"Issuer: {cert.issuer.rfc4514_string()}",
        f"Serial (hex): {format(cert.serial_number, 'x')}",
        f"Validity: {cert.not_valid_before_utc} -> {cert.not_valid_after_utc}",
        f"Public Key: {pk_type}{' ' + str(pk_bits) + ' bits' if pk_bits else ''}",
        f"SAN: {', '.join(sans) if sans else '(none)'}",
        f"SHA-256: {cert.fingerprint(hashes.SHA256()).hex()}",
    ]
