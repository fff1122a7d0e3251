import re
import uuid

from flask import Blueprint, current_app, jsonify, request

from decoratorauth import api_login_required

cert_api = Blueprint("cert_api", __name__)

_NAME_FILTER = re.compile(r"[^a-zA-Z0-9_\-.]")


def _json(body: dict, code: int):
    resp = jsonify(body)
    resp.status_code = code
    return resp


def sanitize_cert_name(value) -> str:
    """Keep [a-zA-Z0-9_-.]; fall back to a unique `cert_...` name."""
    name = _NAME_FILTER.sub("", value or "")
    # a dot-only name would turn into a hidden or parent path
    if not name.strip("."):
        name = "cert_" + uuid.uuid4().hex[:13]
    return name


def enrollment_response(result):
    """Map a CAEnrollmentResult onto the JSON answer and HTTP status."""
    if result.ok:
        return _json({
            "status": "success",
            "certificate": result.certificate_text,
            "verification_output": result.verification_output,
        }, 200)

    kind = result.error_kind
    if kind == "verification":
        return _json({
            "status": "error",
            "message": "Certificate verification failed after retrieval.",
            "verification_error": result.verification_output,
            "openssl_return_code": result.verify_exit_code,
        }, 422)
    if kind == "parse":
        return _json({"error": "Failed to parse CA response for certificate link."}, 500)
    if kind == "protocol" and result.ca_response_code is not None:
        if result.ca_stage == "retrieve":
            error = "Failed to retrieve certificate from CA."
        else:
            error = "Failed to request certificate from CA."
        return _json({
            "error": error,
            "ca_response_code": result.ca_response_code,
            "ca_response_body": result.response_snippet,
        }, 502)
    return _json({"error": result.message or "Certificate request failed."}, 500)


@cert_api.route("/request_cert", methods=["GET", "POST"])
def request_cert():
    # method first: a wrong verb is 405 whether or not the caller is logged in
    if request.method != "POST":
        return _json({"error": "Only POST requests are allowed."}, 405)
    return _submit_csr()


@api_login_required
def _submit_csr():
    csr_content = request.form.get("csr_content") or ""
    if not csr_content.strip():
        return _json({"error": 'Missing or empty "csr_content" in POST request.'}, 400)

    cert_name = sanitize_cert_name(request.form.get("cert_name"))
    print(f"[API] Certificate request '{cert_name}' from {request.remote_addr}")

    ca_client = current_app.workflow.ca_client
    result = ca_client.enroll(csr_content, cert_name)
    return enrollment_response(result)
