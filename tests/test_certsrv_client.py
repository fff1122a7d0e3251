"""Tests for certsrv_client module."""

import os
from typing import Callable
from unittest.mock import MagicMock
from urllib.parse import parse_qs, unquote, unquote_plus

import pytest
import requests

from certsrv_client import (
    LEGACY_USER_AGENT,
    CertsrvClient,
    build_submit_body,
    encode_cert_attrib,
    encode_csr,
    parse_retrieval_link,
)
from models import EnrollmentStatus

CSR_WITH_PLUS = "-----BEGIN CERTIFICATE REQUEST-----\r\nMIIB+abc/def+==\nQQ+\n-----END CERTIFICATE REQUEST-----\n"


class TestEncoding:
    """Tests for the form encoding helpers."""

    def test_csr_plus_survives_form_decoding(self) -> None:
        """Should keep '+' characters under both URL and form decoding."""
        encoded = encode_csr(CSR_WITH_PLUS)
        expected = CSR_WITH_PLUS.replace("\r", "").replace("\n", "")

        assert "+" not in encoded
        assert "%2B" in encoded
        assert unquote(encoded) == expected
        assert unquote_plus(encoded) == expected

    def test_csr_has_no_line_breaks(self) -> None:
        """Should strip CR and LF before encoding."""
        encoded = encode_csr(CSR_WITH_PLUS)

        assert "%0A" not in encoded and "%0D" not in encoded

    def test_cert_attrib_carries_template_and_crlf(self) -> None:
        """Should encode 'CertificateTemplate:<name>' followed by CRLF."""
        assert unquote(encode_cert_attrib("WebServer")) == "CertificateTemplate:WebServer\r\n"

    def test_submit_body_fields(self) -> None:
        """Should post the fixed certfnsh.asp form fields."""
        fields = parse_qs(build_submit_body(CSR_WITH_PLUS, "WebServer"), keep_blank_values=True)

        assert fields["Mode"] == ["newreq"]
        assert fields["CertRequest"] == [CSR_WITH_PLUS.replace("\r", "").replace("\n", "")]
        assert fields["CertAttrib"] == ["CertificateTemplate:WebServer\r\n"]
        assert fields["TargetStoreFlags"] == ["0"]
        assert fields["SaveCert"] == ["yes"]
        assert fields["ThumbPrint"] == [""]


class TestParseRetrievalLink:
    """Tests for parse_retrieval_link."""

    def test_finds_link(self, certfnsh_page: Callable[..., str]) -> None:
        """Should return the location.href target of handleGetCert()."""
        assert parse_retrieval_link(certfnsh_page("certnew.cer?ReqID=7&Enc=b64")) == "certnew.cer?ReqID=7&Enc=b64"

    def test_returns_none_without_function(self) -> None:
        """Should return None for pending or denied pages."""
        assert parse_retrieval_link("<html>Certificate Pending</html>") is None
        assert parse_retrieval_link("") is None


class TestEnroll:
    """Tests for CertsrvClient.enroll."""

    @pytest.fixture
    def session(self) -> MagicMock:
        return MagicMock(spec=requests.Session)

    @pytest.fixture
    def verifier(self) -> MagicMock:
        return MagicMock(return_value=(0, "web01.crt.tmp: OK"))

    @pytest.fixture
    def client(self, cert_dir: str, session: MagicMock, verifier: MagicMock, fixed_clock) -> CertsrvClient:
        return CertsrvClient(
            ca_fqdn="ca.example.ch",
            username="svc",
            password="secret",
            template_name="WebServer",
            cert_dir=cert_dir,
            verifier=verifier,
            session=session,
            clock=fixed_clock,
        )

    def test_happy_path(self, client, session, verifier, make_response, certfnsh_page, issuing_ca, csr_pem, cert_dir) -> None:
        """Should submit, fetch the link target and return the verified certificate."""
        cert_pem = issuing_ca.issue_pem(csr_pem)
        session.request.side_effect = [
            make_response(200, certfnsh_page("certnew.cer?ReqID=42&Enc=b64")),
            make_response(200, cert_pem.decode("ascii"), cert_pem),
        ]

        result = client.enroll(csr_pem, "web01")

        assert result.status == EnrollmentStatus.SUCCESS
        assert result.certificate == cert_pem
        assert result.verification_output == "web01.crt.tmp: OK"
        post, get = session.request.call_args_list
        assert post.args == ("POST", "https://ca.example.ch/certsrv/certfnsh.asp")
        assert get.args == ("GET", "https://ca.example.ch/certsrv/certnew.cer?ReqID=42&Enc=b64")
        assert not os.path.exists(os.path.join(cert_dir, "web01.crt.tmp"))
        assert "Temporary certificate file removed." in result.log

    def test_legacy_headers_and_ntlm(self, client, session, make_response) -> None:
        """Should send the IE11 user agent, the certrqxt referer and NTLM auth."""
        session.request.return_value = make_response(503, "down")

        client.enroll("csr", "web01")

        kwargs = session.request.call_args.kwargs
        assert kwargs["headers"]["User-Agent"] == LEGACY_USER_AGENT
        assert kwargs["headers"]["Referer"] == "https://ca.example.ch/certsrv/certrqxt.asp"
        assert kwargs["auth"].username == "svc"
        assert kwargs["verify"] is False
        assert kwargs["timeout"] == 30

    def test_ca_bundle_enables_tls_verification(self, cert_dir, session, verifier, make_response) -> None:
        """Should pass the bundle path as requests' verify argument."""
        client = CertsrvClient("ca.example.ch", "svc", "secret", "WebServer", cert_dir, verifier,
                               ca_bundle="/etc/ssl/ca.pem", session=session)
        session.request.return_value = make_response(503, "down")

        client.enroll("csr", "web01")

        assert session.request.call_args.kwargs["verify"] == "/etc/ssl/ca.pem"

    def test_http_error_on_submit_stops_run(self, client, session, verifier, make_response) -> None:
        """Should report the status and a 500 char snippet without a retrieval request."""
        session.request.return_value = make_response(503, "x" * 800)

        result = client.enroll("csr", "web01")

        assert result.status == EnrollmentStatus.ERROR
        assert result.error_kind == "protocol"
        assert result.ca_response_code == 503
        assert result.response_snippet == "x" * 500
        assert session.request.call_count == 1
        verifier.assert_not_called()
        assert "CA request failed with HTTP status 503" in result.log

    def test_missing_link_is_parse_failure(self, client, session, make_response) -> None:
        """Should classify a page without handleGetCert() as a parse failure."""
        session.request.return_value = make_response(200, "<html>Your certificate request is pending</html>")

        result = client.enroll("csr", "web01")

        assert result.status == EnrollmentStatus.ERROR
        assert result.error_kind == "parse"
        assert session.request.call_count == 1
        assert "Failed to parse CA response for certificate link" in result.log

    def test_http_error_on_retrieval(self, client, session, make_response, certfnsh_page) -> None:
        """Should report a failed download as a protocol error."""
        session.request.side_effect = [make_response(200, certfnsh_page()), make_response(404, "gone")]

        result = client.enroll("csr", "web01")

        assert result.error_kind == "protocol"
        assert result.ca_response_code == 404
        assert "CA retrieval failed with HTTP status 404" in result.message

    def test_transport_error(self, client, session) -> None:
        """Should turn connection failures into an error result."""
        session.request.side_effect = requests.ConnectionError("no route to host")

        result = client.enroll("csr", "web01")

        assert result.status == EnrollmentStatus.ERROR
        assert result.error_kind == "transport"
        assert "no route to host" in result.message

    def test_timeout(self, client, session) -> None:
        """Should report timeouts as transport errors."""
        session.request.side_effect = requests.Timeout("read timed out")

        result = client.enroll("csr", "web01")

        assert result.error_kind == "transport"
        assert "Timed out after 30s" in result.message

    def test_verification_failure(self, client, session, verifier, make_response, certfnsh_page, cert_dir) -> None:
        """Should report the verifier exit code and output, and still remove the temp file."""
        seen = {}

        def _verify(path, data):
            seen["existed"] = os.path.isfile(path)
            seen["path"] = path
            return 2, "error 20 at 0 depth lookup: unable to get local issuer certificate"

        verifier.side_effect = _verify
        session.request.side_effect = [make_response(200, certfnsh_page()), make_response(200, "PEM", b"PEM")]

        result = client.enroll("csr", "web01")

        assert result.error_kind == "verification"
        assert result.verify_exit_code == 2
        assert "unable to get local issuer" in result.verification_output
        assert seen == {"existed": True, "path": os.path.join(cert_dir, "web01.crt.tmp")}
        assert not os.path.exists(seen["path"])

    def test_verifier_that_cannot_run(self, client, session, verifier, make_response, certfnsh_page, cert_dir) -> None:
        """Should turn a missing verifier binary into a configuration error."""
        verifier.side_effect = FileNotFoundError("openssl")
        session.request.side_effect = [make_response(200, certfnsh_page()), make_response(200, "PEM", b"PEM")]

        result = client.enroll("csr", "web01")

        assert result.error_kind == "configuration"
        assert not os.path.exists(os.path.join(cert_dir, "web01.crt.tmp"))

    def test_verifier_raising_unexpected_error(self, client, session, verifier, make_response, certfnsh_page, cert_dir) -> None:
        """Should turn any exception from the verifier into an error result."""
        verifier.side_effect = RuntimeError("boom")
        session.request.side_effect = [make_response(200, certfnsh_page()), make_response(200, "PEM", b"PEM")]

        result = client.enroll("csr", "web01")

        assert result.status == EnrollmentStatus.ERROR
        assert result.error_kind == "configuration"
        assert "boom" in result.message
        assert not os.path.exists(os.path.join(cert_dir, "web01.crt.tmp"))

    @pytest.mark.parametrize("outcome", [True, None, (0,), ("0", "OK"), (True, "OK")])
    def test_verifier_with_malformed_outcome(self, client, session, verifier, make_response, certfnsh_page, outcome) -> None:
        """Should reject verifier results that are not an (exit_code, output) pair."""
        verifier.side_effect = None
        verifier.return_value = outcome
        session.request.side_effect = [make_response(200, certfnsh_page()), make_response(200, "PEM", b"PEM")]

        result = client.enroll("csr", "web01")

        assert result.status == EnrollmentStatus.ERROR
        assert result.error_kind == "configuration"
        assert "expected an (exit_code, output) pair" in result.message

    def test_stage_of_http_failures(self, client, session, make_response, certfnsh_page) -> None:
        """Should record whether the submit or the download was refused."""
        session.request.side_effect = [make_response(200, certfnsh_page()), make_response(404, "gone")]
        assert client.enroll("csr", "web01").ca_stage == "retrieve"

        session.request.side_effect = [make_response(503, "down")]
        assert client.enroll("csr", "web01").ca_stage == "submit"
