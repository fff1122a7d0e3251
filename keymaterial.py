"""
Key and CSR production for one host.

Decides between reusing `<cn>.key` and generating a new key, writes the
request configuration, the key and the CSR into the certificate directory
and narrates every step in the run log.
"""

import os
import stat
from typing import Callable, List, Optional

from errors import ConfigurationError
from models import GenerationResult, GenerationStatus, RunLog, SubjectProfile
from request_builder import build_request_config
from utils_crt import (
    atomic_write,
    build_csr,
    csr_to_pem,
    generate_private_key,
    load_private_key_file,
    private_key_to_pem,
)


class KeyMaterialManager:

    def __init__(
        self,
        cert_dir: str,
        key_size: int = 2048,
        key_generator: Optional[Callable] = None,
        csr_builder: Optional[Callable] = None,
        clock=None,
    ):
        self.cert_dir = cert_dir
        self.key_size = int(key_size)
        self.key_generator = key_generator or generate_private_key
        self.csr_builder = csr_builder or build_csr
        self.clock = clock

    # ---------------- paths ----------------

    def key_path(self, cn: str) -> str:
        return os.path.join(self.cert_dir, f"{cn}.key")

    def csr_path(self, cn: str) -> str:
        return os.path.join(self.cert_dir, f"{cn}.csr")

    def cnf_path(self, cn: str) -> str:
        return os.path.join(self.cert_dir, f"{cn}-openssl.cnf")

    def key_exists(self, cn: str) -> bool:
        return os.path.isfile(self.key_path(cn))

    # ---------------- run ----------------

    def produce(self, profile: SubjectProfile, force_regenerate: bool = False) -> GenerationResult:
        """Produce key (new or reused) and CSR for `profile.common_name`."""
        log = RunLog(self.clock)
        artifacts: List[str] = []
        cn = profile.common_name
        key_file = self.key_path(cn)
        csr_file = self.csr_path(cn)
        cnf_file = self.cnf_path(cn)

        log.add(f"Attempting to generate certificate components for: {cn}")
        print(f"[CSR] Generating components for {cn} (force_new_key={force_regenerate})")

        def _fail() -> GenerationResult:
            return GenerationResult(tuple(artifacts), GenerationStatus.FAIL, log.text(), "")

        # 1) request configuration
        config = build_request_config(profile, key_size=self.key_size)
        try:
            atomic_write(cnf_file, config.to_openssl_cnf().encode("utf-8"))
        except OSError as e:
            log.error(f"Could not write request configuration {os.path.basename(cnf_file)}: {e}")
            return _fail()
        artifacts.append(os.path.basename(cnf_file))
        log.add(f"Generated request configuration: {os.path.basename(cnf_file)}")
        log.add("Subject Alternative Names: " + "; ".join(config.alt_names))

        # 2) private key
        generate_new_key = force_regenerate or not self.key_exists(cn)
        try:
            if generate_new_key:
                key = self._generate_key(key_file, log)
            else:
                key = self._reuse_key(key_file, log)
        except ConfigurationError as e:
            log.error(str(e))
            return _fail()
        artifacts.append(os.path.basename(key_file))

        # 3) CSR
        try:
            csr = self.csr_builder(config, key)
            csr_pem = csr_to_pem(csr)
            atomic_write(csr_file, csr_pem.encode("ascii"))
        except (ValueError, TypeError, OSError) as e:
            log.error(f"Failed to generate CSR: {e}")
            return _fail()
        artifacts.append(os.path.basename(csr_file))
        log.add(f"Generated CSR: {os.path.basename(csr_file)}")

        return GenerationResult(tuple(artifacts), GenerationStatus.SUCCESS, log.text(), csr_pem)

    def _generate_key(self, key_file: str, log: RunLog):
        log.add(f"Generating NEW {self.key_size}-bit RSA private key.")
        try:
            key = self.key_generator(self.key_size)
            atomic_write(key_file, private_key_to_pem(key), mode=stat.S_IRUSR | stat.S_IWUSR)
        except (ValueError, TypeError, OSError) as e:
            raise ConfigurationError(f"Failed to generate private key: {e}") from e
        log.add(f"Generated NEW private key: {os.path.basename(key_file)}")
        return key

    def _reuse_key(self, key_file: str, log: RunLog):
        name = os.path.basename(key_file)
        log.add(f"Using EXISTING private key: {name}")
        if not os.path.isfile(key_file):
            raise ConfigurationError(f"Existing key expected but missing: {name}. CSR generation skipped.")
        try:
            return load_private_key_file(key_file)
        except (ValueError, TypeError, OSError) as e:
            raise ConfigurationError(f"Existing private key {name} could not be loaded: {e}") from e
