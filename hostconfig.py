"""One JSON document per hostname in the certificate directory."""

import json
import os
from typing import Optional

from errors import ConfigurationError, InputError
from models import STORAGE_KEYS, SubjectProfile
from utils_crt import atomic_write


def sanitize_hostname(value: str) -> str:
    """Trim and reject anything that could escape the certificate directory."""
    hostname = (value or "").strip()
    if not hostname:
        raise InputError("Hostname is required.")
    if "/" in hostname or "\\" in hostname or ".." in hostname:
        raise InputError(f"Invalid hostname '{hostname}': path separators and '..' are not allowed.")
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in hostname):
        raise InputError("Invalid hostname: control characters are not allowed.")
    if os.path.basename(hostname) != hostname or hostname.startswith("."):
        raise InputError(f"Invalid hostname '{hostname}'.")
    return hostname


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


class HostConfigStore:

    def __init__(self, cert_dir: str):
        self.cert_dir = cert_dir

    def path_for(self, hostname: str) -> str:
        return os.path.join(self.cert_dir, f"{sanitize_hostname(hostname)}.conf")

    def save(self, profile: SubjectProfile) -> str:
        """Replace the stored document for `profile.common_name`."""
        path = self.path_for(profile.common_name)
        payload = json.dumps(profile.to_storage(), indent=4).encode("utf-8")
        try:
            atomic_write(path, payload)
        except OSError as e:
            raise ConfigurationError(f"Could not save host configuration {os.path.basename(path)}: {e}") from e
        return path

    def load(self, hostname: str) -> Optional[SubjectProfile]:
        path = self.path_for(hostname)
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            print(f"[HOSTCONF] Ignoring unreadable {path}: {e}")
            return None
        if not isinstance(data, dict):
            print(f"[HOSTCONF] Ignoring {path}: not a JSON object")
            return None
        data = {k: _as_text(data.get(k)) for k in STORAGE_KEYS}
        data["cn"] = sanitize_hostname(hostname)
        try:
            return SubjectProfile.from_form(data)
        except InputError as e:
            print(f"[HOSTCONF] Ignoring {path}: {e}")
            return None
