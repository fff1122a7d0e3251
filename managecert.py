#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import json
import os
import sys

from certreq_config import build_ca_client, load_yaml_conf, tls_warning
from cert_api import sanitize_cert_name
from errors import InputError
from hostconfig import HostConfigStore
from utils_crt import atomic_write, describe_certificate


# -----------------------------
# Commands
# -----------------------------

def _cmd_submit_csr(conf: dict, csr_file: str, name: str, out_path=None, ca_client=None) -> int:
    """Enroll a CSR file at the CA; write the certificate next to the other artifacts."""
    try:
        with open(csr_file, "r", encoding="utf-8") as f:
            csr_text = f.read()
    except OSError as e:
        print(f"ERROR: cannot read {csr_file}: {e}", file=sys.stderr)
        return 1
    if not csr_text.strip():
        print(f"ERROR: {csr_file} is empty", file=sys.stderr)
        return 1

    name = sanitize_cert_name(name or os.path.splitext(os.path.basename(csr_file))[0])
    warning = tls_warning(conf)
    if warning:
        print(warning, file=sys.stderr)

    client = ca_client or build_ca_client(conf)
    result = client.enroll(csr_text, name)
    print(result.log)
    if not result.ok:
        print(f"ERROR: {result.message}", file=sys.stderr)
        return 2

    out_path = out_path or os.path.join(conf["cert_dir"], f"{name}.crt")
    atomic_write(out_path, result.certificate)
    print(f"Certificate written to {out_path}")
    for line in describe_certificate(result.certificate):
        print(f"  {line}")
    return 0


def _cmd_show_host(conf: dict, hostname: str) -> int:
    store = HostConfigStore(conf["cert_dir"])
    try:
        profile = store.load(hostname)
    except InputError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    if profile is None:
        print(f"No stored configuration for {hostname}", file=sys.stderr)
        return 1
    print(json.dumps(profile.to_storage(), indent=4))

    crt = os.path.join(conf["cert_dir"], f"{profile.common_name}.crt")
    if os.path.isfile(crt):
        with open(crt, "rb") as f:
            lines = describe_certificate(f.read())
        print(f"Certificate {os.path.basename(crt)}:")
        for line in lines or ["(unreadable)"]:
            print(f"  {line}")
    return 0


def _cmd_list_hosts(conf: dict) -> int:
    names = sorted(
        fn[:-len(".conf")] for fn in os.listdir(conf["cert_dir"])
        if fn.endswith(".conf")
    )
    for name in names:
        crt = "crt" if os.path.isfile(os.path.join(conf["cert_dir"], f"{name}.crt")) else "-"
        key = "key" if os.path.isfile(os.path.join(conf["cert_dir"], f"{name}.key")) else "-"
        print(f"{name:40} {key:4} {crt}")
    return 0


# -----------------------------
# CLI entrypoint
# -----------------------------

def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Certificate request tools")
    p.add_argument("--config", type=str, default="certreq.yaml",
                   help="Path to certreq.yaml (default: certreq.yaml).")
    p.add_argument("--submit-csr", type=str, metavar="CSR_FILE",
                   help="Submit a PEM CSR to the CA, verify and save the certificate.")
    p.add_argument("--name", type=str,
                   help="Certificate name used for the .crt/.crt.tmp files (default: CSR file name).")
    p.add_argument("--out", type=str,
                   help="Where to write the certificate (default: <cert_dir>/<name>.crt).")
    p.add_argument("--show-host", type=str, metavar="CN",
                   help="Print the stored configuration (and certificate summary) of a host.")
    p.add_argument("--list-hosts", action="store_true",
                   help="List hosts with a stored configuration.")
    return p


def main(argv=None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(argv)
    conf = load_yaml_conf(args.config)

    if args.submit_csr:
        return _cmd_submit_csr(conf, args.submit_csr, args.name, out_path=args.out)
    if args.show_host:
        return _cmd_show_host(conf, args.show_host)
    if args.list_hosts:
        return _cmd_list_hosts(conf)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
