#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
import secrets

import yaml

from callback_loader import load_callback
from certsrv_client import CertsrvClient, DEFAULT_TIMEOUT, LEGACY_USER_AGENT
from hostconfig import HostConfigStore
from keymaterial import KeyMaterialManager
from workflow import Workflow


DEFAULT_AUTH_TIMEOUT = 4 * 3600

# environment variable -> (section, key)
ENV_OVERRIDES = {
    "AUTH_USERNAME":   ("auth", "username"),
    "AUTH_PASSWORD":   ("auth", "password"),
    "CA_FQDN":         ("ca", "fqdn"),
    "CA_USERNAME":     ("ca", "username"),
    "CA_PASSWORD":     ("ca", "password"),
    "CA_TEMPLATE_NAME": ("ca", "template_name"),
    "DEFAULT_ORG":     ("defaults", "org"),
    "DEFAULT_OU":      ("defaults", "ou"),
    "DEFAULT_CITY":    ("defaults", "city"),
    "DEFAULT_STATE":   ("defaults", "state"),
    "DEFAULT_COUNTRY": ("defaults", "country"),
}


def _as_bool(val, default=False) -> bool:
    if val is None:
        return default
    if isinstance(val, bool):
        return val
    return str(val).strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(cfg: dict, environ) -> None:
    for var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            cfg.setdefault(section, {})
            cfg[section][key] = value


def load_yaml_conf(path="certreq.yaml", environ=None):
    """
    Load certreq.yaml into a flat runtime dict.
    Environment variables listed in ENV_OVERRIDES take precedence over the file.
    """
    environ = os.environ if environ is None else environ

    cfg = {}
    if path and os.path.isfile(path):
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    for section in ("global", "defaults", "auth", "ca", "key", "verifier"):
        if cfg.get(section) is None:
            cfg[section] = {}
        elif not isinstance(cfg[section], dict):
            raise ValueError(f"{path}: section '{section}' must be a mapping")

    _apply_env_overrides(cfg, environ)

    conf = {}
    gbl = cfg["global"]

    conf["secret_key"] = gbl.get("secret_key")
    if not conf["secret_key"]:
        print("WARNING: global.secret_key not set, using a random key (logins reset on restart)")
        conf["secret_key"] = secrets.token_hex(32)

    conf["cert_dir"] = os.path.abspath(gbl.get("cert_dir", "./certdir"))
    conf["session_dir"] = os.path.abspath(gbl.get("session_dir", "./sessions"))
    conf["auth_timeout_seconds"] = int(gbl.get("auth_timeout_seconds", DEFAULT_AUTH_TIMEOUT))
    listen = gbl.get("listen") or {}
    conf["listen_host"] = listen.get("host", "127.0.0.1")
    conf["listen_port"] = int(listen.get("port", 8080))

    os.makedirs(conf["cert_dir"], mode=0o755, exist_ok=True)

    # ---- form defaults
    conf["defaults"] = {
        "org": "YourOrg",
        "ou": "YourOu",
        "city": "YourCity",
        "state": "YourState",
        "country": "CH",
    }
    conf["defaults"].update({k: str(v) for k, v in cfg["defaults"].items() if v is not None})
    if len(conf["defaults"].get("country", "")) > 2:
        raise ValueError("defaults.country must be a 2 letter code")

    # ---- login
    auth = cfg["auth"]
    cb = auth.get("callback") or {}
    conf["auth_callback"] = {
        "path": cb.get("path", "callbacks/auth_static.py"),
        "func": cb.get("func", "check_auth"),
    }
    conf["auth_options"] = dict(auth.get("options") or {})
    if conf["auth_callback"]["path"].endswith("auth_static.py"):
        conf["auth_options"].setdefault("expected_username", str(auth.get("username", "admin")))
        conf["auth_options"].setdefault("expected_password", str(auth.get("password", "password")))

    # ---- CA
    ca = cfg["ca"]
    conf["ca"] = {
        "fqdn": ca.get("fqdn", "your-server.domain.ch"),
        "username": ca.get("username", "username"),
        "password": ca.get("password", "password"),
        "template_name": ca.get("template_name", "YourTemplate"),
        "verify_tls": _as_bool(ca.get("verify_tls"), default=False),
        "ca_bundle": ca.get("ca_bundle") or None,
        "timeout_seconds": float(ca.get("timeout_seconds", DEFAULT_TIMEOUT)),
        "user_agent": ca.get("user_agent") or LEGACY_USER_AGENT,
    }
    if conf["ca"]["timeout_seconds"] <= 0:
        raise ValueError("ca.timeout_seconds must be positive")

    # ---- key material
    conf["rsa_key_size"] = int(cfg["key"].get("rsa_key_size", 2048))
    if conf["rsa_key_size"] < 2048:
        raise ValueError(f"key.rsa_key_size too small: {conf['rsa_key_size']} (min 2048)")

    # ---- certificate verifier
    ver = cfg["verifier"]
    vcb = ver.get("callback") or {}
    conf["verifier_callback"] = {
        "path": vcb.get("path", "callbacks/verify_openssl.py"),
        "func": vcb.get("func", "verify_certificate"),
    }
    conf["verifier_options"] = dict(ver.get("options") or {})

    return conf


def build_ca_client(conf: dict, session=None) -> CertsrvClient:
    ca = conf["ca"]
    verifier = load_callback(conf["verifier_callback"], "verify_certificate", conf["verifier_options"])
    return CertsrvClient(
        ca_fqdn=ca["fqdn"],
        username=ca["username"],
        password=ca["password"],
        template_name=ca["template_name"],
        cert_dir=conf["cert_dir"],
        verifier=verifier,
        verify_tls=ca["verify_tls"],
        ca_bundle=ca["ca_bundle"],
        timeout=ca["timeout_seconds"],
        user_agent=ca["user_agent"],
        session=session,
    )


def tls_warning(conf: dict):
    """Startup warning text while TLS verification toward the CA is off, else None."""
    ca = conf["ca"]
    if ca["verify_tls"] or ca["ca_bundle"]:
        return None
    return (f"WARNING: TLS certificate verification toward {ca['fqdn']} is DISABLED. "
            "Set ca.verify_tls: true (and ca.ca_bundle) in production.")


def build_workflow(conf: dict, ca_client=None):
    return Workflow(
        host_store=HostConfigStore(conf["cert_dir"]),
        key_manager=KeyMaterialManager(conf["cert_dir"], key_size=conf["rsa_key_size"]),
        ca_client=ca_client or build_ca_client(conf),
        cert_dir=conf["cert_dir"],
        defaults=conf["defaults"],
    )
