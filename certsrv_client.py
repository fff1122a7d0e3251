#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Client for the legacy ADCS web enrollment pages (/certsrv).

Enrollment is two round trips plus a local check:
  A) POST certfnsh.asp with the CSR and the template attribute, read the
     `handleGetCert()` retrieval link out of the returned HTML;
  B) GET the link to download the issued certificate;
  C) write it to `<name>.crt.tmp`, run the verifier on it, delete the file.
One attempt only; every failure becomes an `error` result carrying the log.
"""

import os
import re
from typing import Callable, Optional, Tuple, Union
from urllib.parse import quote

import requests
from requests_ntlm import HttpNtlmAuth

from errors import CertReqError, ConfigurationError, ProtocolError, TransportError, VerificationError
from models import CAEnrollmentResult, EnrollmentStatus, RunLog

# certsrv serves different markup to non-browser clients
LEGACY_USER_AGENT = "Mozilla/5.0 (Windows NT 6.3; WOW64; Trident/7.0; rv:11.0) like Gecko"

DEFAULT_TIMEOUT = 30
SNIPPET_LEN = 500

_GET_CERT_RE = re.compile(r'function handleGetCert\(\) {\s*location\.href\s*=\s*"([^"]+)";', re.S)


# ---------------- Encoding helpers ----------------

def encode_csr(csr_text: str) -> str:
    """Single-line, percent-encoded CSR; a literal '+' travels as %2B, never as a space."""
    one_line = csr_text.replace("\r", "").replace("\n", "")
    return quote(one_line, safe="")


def encode_cert_attrib(template_name: str) -> str:
    return quote(f"CertificateTemplate:{template_name}\r\n", safe="")


def build_submit_body(csr_text: str, template_name: str) -> str:
    return (
        "Mode=newreq"
        f"&CertRequest={encode_csr(csr_text)}"
        f"&CertAttrib={encode_cert_attrib(template_name)}"
        "&TargetStoreFlags=0&SaveCert=yes&ThumbPrint="
    )


def parse_retrieval_link(html: str) -> Optional[str]:
    m = _GET_CERT_RE.search(html or "")
    return m.group(1) if m else None


def _unpack_verifier_outcome(outcome) -> Tuple[int, str]:
    """Verifiers return (exit_code, output); anything else is a setup error."""
    if (
        not isinstance(outcome, tuple)
        or len(outcome) != 2
        or isinstance(outcome[0], bool)
        or not isinstance(outcome[0], int)
    ):
        raise ConfigurationError(
            f"Certificate verifier returned {outcome!r}, expected an (exit_code, output) pair"
        )
    exit_code, output = outcome
    return exit_code, output if isinstance(output, str) else str(output or "")


# ---------------- Client ----------------

class CertsrvClient:

    def __init__(
        self,
        ca_fqdn: str,
        username: str,
        password: str,
        template_name: str,
        cert_dir: str,
        verifier: Callable[..., Tuple[int, str]],
        *,
        verify_tls: bool = False,
        ca_bundle: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = LEGACY_USER_AGENT,
        session: Optional[requests.Session] = None,
        clock=None,
    ):
        self.ca_fqdn = ca_fqdn
        self.username = username
        self.password = password
        self.template_name = template_name
        self.cert_dir = cert_dir
        self.verifier = verifier
        self.verify_tls = verify_tls
        self.ca_bundle = ca_bundle
        self.timeout = timeout
        self.user_agent = user_agent
        self._session = session
        self.clock = clock

    @property
    def base_url(self) -> str:
        return f"https://{self.ca_fqdn}/certsrv"

    @property
    def submit_url(self) -> str:
        return f"{self.base_url}/certfnsh.asp"

    def _tls_verify(self) -> Union[bool, str]:
        if self.ca_bundle:
            return self.ca_bundle
        return bool(self.verify_tls)

    def _headers(self) -> dict:
        return {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Encoding": "gzip, deflate",
            "Accept-Language": "en-US,en;q=0.5",
            "Connection": "keep-alive",
            "Referer": f"{self.base_url}/certrqxt.asp",
            "User-Agent": self.user_agent,
            "Content-Type": "application/x-www-form-urlencoded",
        }

    def _request(self, session, method: str, url: str, what: str, **kwargs) -> requests.Response:
        try:
            return session.request(
                method,
                url,
                auth=HttpNtlmAuth(self.username, self.password),
                headers=self._headers(),
                verify=self._tls_verify(),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.Timeout as e:
            raise TransportError(f"Timed out after {self.timeout}s {what}: {e}") from e
        except requests.RequestException as e:
            raise TransportError(f"Error {what}: {e}") from e

    # ---------------- Step A: submit ----------------

    def submit(self, session, csr_text: str, log: RunLog) -> str:
        """POST the request; return the retrieval link found in the answer."""
        body = build_submit_body(csr_text, self.template_name)
        log.add("CSR content encoded.")
        log.add(f"Certificate template attribute prepared: {self.template_name}")
        log.add(f"Submitting request to CA URL: {self.submit_url}")

        resp = self._request(session, "POST", self.submit_url, "requesting certificate from CA", data=body)
        if resp.status_code != 200:
            snippet = (resp.text or "")[:SNIPPET_LEN]
            raise ProtocolError(
                f"CA request failed with HTTP status {resp.status_code}. Response snippet: {snippet}",
                status_code=resp.status_code,
                body_snippet=snippet,
            )
        log.add(f"CA submission successful (HTTP {resp.status_code}). Parsing response for retrieval link.")

        link = parse_retrieval_link(resp.text)
        if not link:
            snippet = (resp.text or "")[:SNIPPET_LEN]
            raise ProtocolError(
                "Failed to parse CA response for certificate link "
                f"(request pending, denied, or unexpected CA page). Response snippet: {snippet}",
                status_code=resp.status_code,
                body_snippet=snippet,
                parse_failure=True,
            )
        return link

    # ---------------- Step B: retrieve ----------------

    def retrieve(self, session, link: str, log: RunLog) -> bytes:
        cert_url = f"{self.base_url}/{link}"
        log.add(f"Certificate retrieval link found: {cert_url}")
        log.add("Attempting to retrieve certificate.")

        resp = self._request(session, "GET", cert_url, "retrieving certificate")
        if resp.status_code != 200:
            snippet = (resp.text or "")[:SNIPPET_LEN]
            raise ProtocolError(
                f"CA retrieval failed with HTTP status {resp.status_code}. Response snippet: {snippet}",
                status_code=resp.status_code,
                body_snippet=snippet,
                stage="retrieve",
            )
        log.add("Certificate data retrieved from CA.")
        return resp.content

    # ---------------- Step C: verify ----------------

    def temp_path(self, name: str) -> str:
        return os.path.join(self.cert_dir, f"{name}.crt.tmp")

    def verify(self, name: str, data: bytes, log: RunLog) -> str:
        """Run the verifier on a temp copy; return its output or raise VerificationError."""
        tmp_path = self.temp_path(name)
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise ConfigurationError(f"Could not save certificate to '{tmp_path}' for verification: {e}") from e
        log.add(f"Certificate saved temporarily for verification: {os.path.basename(tmp_path)}")

        try:
            log.add("Performing certificate verification.")
            try:
                outcome = self.verifier(path=tmp_path, data=data)
            except Exception as e:
                # plug-in code: anything it raises ends the run as an error result
                raise ConfigurationError(f"Certificate verifier could not run: {e!r}") from e
            exit_code, output = _unpack_verifier_outcome(outcome)
        finally:
            try:
                os.remove(tmp_path)
            except FileNotFoundError:
                pass
            log.add("Temporary certificate file removed.")

        output = (output or "").rstrip()
        log.add("Verification output:")
        log.append_block(output)
        if exit_code != 0:
            raise VerificationError(
                f"Certificate verification failed. Verifier exit code: {exit_code}. Output: {output}",
                exit_code=exit_code,
                output=output,
            )
        log.add("Certificate verification successful.")
        return output

    # ---------------- whole run ----------------

    def _open_session(self):
        return self._session if self._session is not None else requests.Session()

    def enroll(self, csr_text: str, name: str) -> CAEnrollmentResult:
        """Submit `csr_text`, download and verify the certificate; never raises CertReqError."""
        log = RunLog(self.clock)
        log.add(f"Attempting to request certificate from CA {self.ca_fqdn} for: {name}")
        print(f"[CA] Enrollment for {name} at {self.ca_fqdn} (template {self.template_name})")

        data = b""
        session = self._open_session()
        try:
            link = self.submit(session, csr_text, log)
            data = self.retrieve(session, link, log)
            output = self.verify(name, data, log)
        except CertReqError as e:
            log.error(str(e))
            print(f"[CA] Enrollment for {name} failed ({e.kind}): {e}")
            return CAEnrollmentResult(
                status=EnrollmentStatus.ERROR,
                certificate=data,
                verification_output=getattr(e, "output", ""),
                log=log.text(),
                message=str(e),
                error_kind=e.kind,
                ca_response_code=getattr(e, "status_code", None),
                response_snippet=getattr(e, "body_snippet", ""),
                ca_stage=getattr(e, "stage", ""),
                verify_exit_code=getattr(e, "exit_code", None),
            )
        finally:
            if self._session is None:
                session.close()

        print(f"[CA] Enrollment for {name} succeeded")
        return CAEnrollmentResult(
            status=EnrollmentStatus.SUCCESS,
            certificate=data,
            verification_output=output,
            log=log.text(),
            message="Certificate issued and verified.",
        )
