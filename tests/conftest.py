"""Test fixtures for the certificate request tool."""

import datetime as dt
from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from keymaterial import KeyMaterialManager
from models import SubjectProfile

FIXED_NOW = dt.datetime(2025, 1, 2, 3, 4, 5)


@pytest.fixture
def fixed_clock() -> Callable[[], dt.datetime]:
    """Return a clock frozen at 2025-01-02 03:04:05."""
    return lambda: FIXED_NOW


@pytest.fixture
def cert_dir(tmp_path: Path) -> str:
    """Return an empty certificate directory."""
    d = tmp_path / "certdir"
    d.mkdir()
    return str(d)


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """Generate one RSA key for the whole run (generation is slow)."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def key_manager(cert_dir: str, rsa_key, fixed_clock) -> KeyMaterialManager:
    """Return a key manager whose generator hands out the shared test key."""
    generator = MagicMock(side_effect=lambda size: rsa_key)
    return KeyMaterialManager(cert_dir, key_size=2048, key_generator=generator, clock=fixed_clock)


@pytest.fixture
def profile() -> SubjectProfile:
    """Return a typical host profile."""
    return SubjectProfile(
        common_name="web01",
        organization="Test Org",
        organizational_unit="IT",
        city="Zurich",
        state="ZH",
        country="CH",
        dns_names=("web01.example.ch", "www.example.ch"),
        ip_addresses=("10.0.0.5",),
    )


class IssuingCA:
    """Self-signed root issuing server certificates from CSRs."""

    def __init__(self, common_name: str = "Test Root CA"):
        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        now = dt.datetime.now(dt.timezone.utc)
        ski = x509.SubjectKeyIdentifier.from_public_key(self.key.public_key())
        self.cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - dt.timedelta(days=1))
            .not_valid_after(now + dt.timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=False, content_commitment=False, key_encipherment=False,
                    data_encipherment=False, key_agreement=False, key_cert_sign=True,
                    crl_sign=True, encipher_only=False, decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(ski, critical=False)
            .sign(self.key, hashes.SHA256())
        )

    @property
    def pem(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.PEM)

    def issue(self, csr_pem: str) -> x509.Certificate:
        csr = x509.load_pem_x509_csr(csr_pem.encode("ascii"))
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        now = dt.datetime.now(dt.timezone.utc)
        return (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self.cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - dt.timedelta(hours=1))
            .not_valid_after(now + dt.timedelta(days=90))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True, content_commitment=False, key_encipherment=True,
                    data_encipherment=False, key_agreement=False, key_cert_sign=False,
                    crl_sign=False, encipher_only=False, decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
            .add_extension(san, critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(self.key.public_key()),
                critical=False,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(csr.public_key()), critical=False)
            .sign(self.key, hashes.SHA256())
        )

    def issue_pem(self, csr_pem: str) -> bytes:
        return self.issue(csr_pem).public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="session")
def issuing_ca() -> IssuingCA:
    """Return a test CA shared by the whole run."""
    return IssuingCA()


@pytest.fixture
def csr_pem(key_manager: KeyMaterialManager, profile: SubjectProfile) -> str:
    """Return a real CSR for the `profile` host."""
    result = key_manager.produce(profile)
    assert result.ok
    return result.csr_content


def _http_response(status_code: int = 200, text: str = "", content: bytes = None) -> MagicMock:
    """Return a stand-in for requests.Response."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    resp.content = content if content is not None else text.encode("utf-8")
    return resp


def _certfnsh_page(link: str = "certnew.cer?ReqID=42&Enc=b64") -> str:
    """Return the HTML fragment certfnsh.asp answers when a certificate is issued."""
    return (
        "<html><head><script>\n"
        "function handleGetCert() {\n"
        f'    location.href = "{link}";\n'
        "}\n"
        "</script></head><body>Certificate Issued</body></html>"
    )


@pytest.fixture
def make_response() -> Callable[..., MagicMock]:
    """Return a factory of fake HTTP responses."""
    return _http_response


@pytest.fixture
def certfnsh_page() -> Callable[..., str]:
    """Return a factory of certfnsh.asp 'issued' pages."""
    return _certfnsh_page


@pytest.fixture(scope="session")
def unrelated_ca() -> IssuingCA:
    """Return a second CA that issued nothing under test."""
    return IssuingCA("Other Root")
