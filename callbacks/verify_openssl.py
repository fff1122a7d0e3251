import subprocess


def verify_certificate(*, path, data=None, ca_file=None, openssl_bin="openssl", timeout=30, **kwargs):
    """
    `openssl verify -verbose` on the downloaded certificate.
    Returns (exit_code, combined stdout/stderr).
    """
    cmd = [openssl_bin, "verify", "-verbose"]
    if ca_file:
        cmd += ["-CAfile", ca_file]
    cmd.append(path)

    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        return 124, f"openssl verify timed out after {timeout}s: {e}"
    return proc.returncode, proc.stdout or ""
