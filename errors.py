from typing import Optional


class CertReqError(Exception):
    """Base class for every failure of an enrollment run."""
    kind = "internal"


class InputError(CertReqError):
    """Missing or invalid request fields."""
    kind = "input"


class InvalidTransition(InputError):
    """Wizard action not allowed from the current step."""
    kind = "transition"


class TransportError(CertReqError):
    """Network failure (DNS, TLS, timeout...) while talking to the CA."""
    kind = "transport"


class ProtocolError(CertReqError):
    """The CA answered, but not with what the enrollment pages should return."""
    kind = "protocol"

    def __init__(self, message: str, status_code: Optional[int] = None, body_snippet: str = "",
                 parse_failure: bool = False, stage: str = "submit"):
        super().__init__(message)
        self.status_code = status_code
        self.body_snippet = body_snippet
        self.parse_failure = parse_failure
        self.stage = stage
        if parse_failure:
            self.kind = "parse"


class VerificationError(CertReqError):
    kind = "verification"

    def __init__(self, message: str, exit_code: int, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class ConfigurationError(CertReqError):
    """Local setup problem: key expected but missing, directory not writable, bad config."""
    kind = "configuration"
