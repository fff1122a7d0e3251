"""Typed records exchanged by the wizard, the key manager and the CA client."""

import base64
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple, Union

from errors import InputError


STORAGE_KEYS = ("cn", "org", "ou", "city", "state", "country", "dns", "ips")


def split_list(value: Union[str, Iterable[str], None]) -> List[str]:
    """Split a comma separated field, trim entries and drop empty ones (order kept)."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [v.strip() for v in value if v and v.strip()]


# ---------------- Subject ----------------

@dataclass(frozen=True)
class SubjectProfile:
    common_name: str
    organization: str = ""
    organizational_unit: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    dns_names: Tuple[str, ...] = ()
    ip_addresses: Tuple[str, ...] = ()

    def __post_init__(self):
        if not (self.common_name or "").strip():
            raise InputError("Common name (hostname) is required.")
        if len(self.country or "") > 2:
            raise InputError(f"Country code must be at most 2 letters, got '{self.country}'.")
        object.__setattr__(self, "dns_names", tuple(self.dns_names))
        object.__setattr__(self, "ip_addresses", tuple(self.ip_addresses))

    @classmethod
    def from_form(cls, data: dict) -> "SubjectProfile":
        """Build from the storage/form mapping (keys cn, org, ou, city, state, country, dns, ips)."""
        def _s(key):
            return str(data.get(key) or "").strip()

        return cls(
            common_name=_s("cn"),
            organization=_s("org"),
            organizational_unit=_s("ou"),
            city=_s("city"),
            state=_s("state"),
            country=_s("country"),
            dns_names=tuple(split_list(data.get("dns"))),
            ip_addresses=tuple(split_list(data.get("ips"))),
        )

    def to_storage(self) -> dict:
        return {
            "cn": self.common_name,
            "org": self.organization,
            "ou": self.organizational_unit,
            "city": self.city,
            "state": self.state,
            "country": self.country,
            "dns": ", ".join(self.dns_names),
            "ips": ", ".join(self.ip_addresses),
        }


# ---------------- Run log ----------------

class RunLog:
    """
    Append-only, user visible narrative of a run.
    Every entry is prefixed with a timestamp; verbatim blocks (other logs,
    section headers) are appended as-is.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now
        self._chunks: List[str] = []

    def add(self, message: str) -> None:
        stamp = self._clock().strftime("%Y-%m-%d %H:%M:%S")
        self._chunks.append(f"[{stamp}] {message.rstrip()}\n")

    def error(self, message: str) -> None:
        self.add(f"ERROR: {message}")

    def append_block(self, text: str) -> None:
        if not text:
            return
        self._chunks.append(text if text.endswith("\n") else text + "\n")

    def text(self) -> str:
        return "".join(self._chunks)

    def __str__(self):
        return self.text()


# ---------------- Results ----------------

class GenerationStatus(str, Enum):
    SUCCESS = "success"
    FAIL = "fail"


class EnrollmentStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    NOT_ATTEMPTED = "not_attempted"


@dataclass(frozen=True)
class GenerationResult:
    artifacts: Tuple[str, ...]
    status: GenerationStatus
    log: str
    csr_content: str = ""

    @property
    def ok(self) -> bool:
        return self.status == GenerationStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "artifacts": list(self.artifacts),
            "status": self.status.value,
            "log": self.log,
            "csr_content": self.csr_content,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "GenerationResult":
        return cls(
            artifacts=tuple(d.get("artifacts") or ()),
            status=GenerationStatus(d.get("status", "fail")),
            log=d.get("log", ""),
            csr_content=d.get("csr_content", ""),
        )


@dataclass(frozen=True)
class CAEnrollmentResult:
    status: EnrollmentStatus
    certificate: bytes = b""
    verification_output: str = ""
    log: str = ""
    message: str = ""
    error_kind: str = ""
    ca_response_code: Optional[int] = None
    response_snippet: str = ""
    verify_exit_code: Optional[int] = None
    # "submit" or "retrieve" for CA protocol failures
    ca_stage: str = ""

    @classmethod
    def not_attempted(cls, log: str) -> "CAEnrollmentResult":
        return cls(status=EnrollmentStatus.NOT_ATTEMPTED, log=log,
                   message="CA request not attempted.")

    @property
    def ok(self) -> bool:
        return self.status == EnrollmentStatus.SUCCESS

    @property
    def certificate_text(self) -> str:
        if not self.certificate:
            return ""
        from utils_crt import certificate_to_pem_text
        return certificate_to_pem_text(self.certificate)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        d["certificate"] = base64.b64encode(self.certificate).decode("ascii")
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "CAEnrollmentResult":
        d = dict(d)
        d["status"] = EnrollmentStatus(d.get("status", "error"))
        d["certificate"] = base64.b64decode(d.get("certificate") or "")
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in d.items() if k in known})
