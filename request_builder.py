"""Certificate request configuration built from a SubjectProfile."""

import ipaddress
from dataclasses import dataclass
from typing import List, Tuple

from cryptography import x509 as cx509
from cryptography.x509.oid import NameOID

from models import SubjectProfile


def build_alt_names(profile: SubjectProfile) -> List[str]:
    """
    SAN lines in request-config notation.
    CN is always DNS.1; DNS entries equal to the CN are skipped; IPs follow the DNS entries.
    """
    hostname = profile.common_name
    alt_names = [f"DNS.1 = {hostname}"]

    dns_counter = 2
    for dns in profile.dns_names:
        dns = dns.strip()
        if not dns or dns == hostname:
            continue
        alt_names.append(f"DNS.{dns_counter} = {dns}")
        dns_counter += 1

    ip_counter = 1
    for ip in profile.ip_addresses:
        ip = ip.strip()
        if not ip:
            continue
        alt_names.append(f"IP.{ip_counter} = {ip}")
        ip_counter += 1

    return alt_names


def _coerce_ip_san(value: str) -> cx509.GeneralName:
    # IP entries are not validated upstream: keep anything that is not an address as a DNS name
    try:
        return cx509.IPAddress(ipaddress.ip_address(value))
    except ValueError:
        return cx509.DNSName(value)


@dataclass(frozen=True)
class RequestConfig:
    profile: SubjectProfile
    alt_names: Tuple[str, ...]
    key_size: int = 2048

    @property
    def common_name(self) -> str:
        return self.profile.common_name

    def distinguished_name(self) -> List[Tuple[str, str]]:
        p = self.profile
        return [
            ("C", p.country),
            ("ST", p.state),
            ("L", p.city),
            ("O", p.organization),
            ("OU", p.organizational_unit),
            ("CN", p.common_name),
        ]

    def to_x509_name(self) -> cx509.Name:
        oids = {
            "C": NameOID.COUNTRY_NAME,
            "ST": NameOID.STATE_OR_PROVINCE_NAME,
            "L": NameOID.LOCALITY_NAME,
            "O": NameOID.ORGANIZATION_NAME,
            "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
            "CN": NameOID.COMMON_NAME,
        }
        return cx509.Name([
            cx509.NameAttribute(oids[k], v) for k, v in self.distinguished_name() if v
        ])

    def to_san_extension(self) -> cx509.SubjectAlternativeName:
        names: List[cx509.GeneralName] = []
        for line in self.alt_names:
            kind, _, value = line.partition(" = ")
            if kind.startswith("IP."):
                names.append(_coerce_ip_san(value))
            else:
                names.append(cx509.DNSName(value))
        return cx509.SubjectAlternativeName(names)

    def to_openssl_cnf(self) -> str:
        """Request configuration artifact, usable with `openssl req -config` for manual runs."""
        dn = "\n".join(f"{k} = {v}" for k, v in self.distinguished_name())
        header = (
            "[req]\n"
            "distinguished_name = req_distinguished_name\n"
            "req_extensions = req_cert_extensions\n"
            "prompt = no\n"
            "encrypt_key = no\n"
            "dirstring_type = nombstr\n"
            f"default_bits = {self.key_size}\n"
            f"default_keyfile = {self.common_name}.key\n"
            "\n"
            "[req_distinguished_name]\n"
            f"{dn}\n"
            "\n"
            "[req_cert_extensions]\n"
            "subjectAltName = @alt_names\n"
            "\n"
            "[alt_names]\n"
        )
        return header + "\n".join(self.alt_names) + "\n"


def build_request_config(profile: SubjectProfile, key_size: int = 2048) -> RequestConfig:
    return RequestConfig(profile=profile, alt_names=tuple(build_alt_names(profile)), key_size=key_size)
