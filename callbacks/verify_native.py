from cryptography import x509
from cryptography.x509.verification import PolicyBuilder, Store, VerificationError

from utils_crt import load_certificate_bytes, extract_cn_and_sans


def verify_certificate(*, path=None, data, ca_file=None, **kwargs):
    """
    Path validation with cryptography against the PEM bundle `ca_file`
    (roots and intermediates). Returns (0, summary) or (2, reason).
    """
    if not ca_file:
        return 2, "verify_native: 'ca_file' (PEM bundle of the issuing chain) is required"

    with open(ca_file, "rb") as f:
        bundle = x509.load_pem_x509_certificates(f.read())

    try:
        leaf = load_certificate_bytes(data)
    except ValueError as e:
        return 2, f"unable to load certificate: {e}"

    cn, sans = extract_cn_and_sans(leaf)
    subject = sans[0] if sans else cn
    roots = [c for c in bundle if c.issuer == c.subject]
    intermediates = [c for c in bundle if c.issuer != c.subject]

    verifier = PolicyBuilder().store(Store(roots)).build_server_verifier(x509.DNSName(subject))
    try:
        chain = verifier.verify(leaf, intermediates)
    except VerificationError as e:
        return 2, f"{leaf.subject.rfc4514_string()}: verification failed: {e}"

    lines = [f"{c.subject.rfc4514_string()}" for c in chain]
    return 0, "OK\nchain: " + " <- ".join(lines)
