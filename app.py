#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import os
import secrets

from flask import Flask, Response, redirect, render_template, request, send_file, session, url_for
from waitress import serve

from callback_loader import load_callback
from cert_api import cert_api
from certreq_config import build_workflow, load_yaml_conf, tls_warning
from decoratorauth import check_credentials, is_logged_in, login_user, logout_user
from errors import ConfigurationError, InputError, InvalidTransition
from sessionstore import FileSessionStore
from utils_crt import describe_certificate
from workflow import Action

app = Flask(__name__, template_folder="template")
app.register_blueprint(cert_api)


def init_app(conf, workflow=None, session_store=None, auth_func=None):
    """Attach configuration and services to the module level app."""
    app.confcertreq = conf
    app.secret_key = conf["secret_key"]
    app.auth_func = auth_func or load_callback(conf["auth_callback"], "check_auth", conf["auth_options"])
    app.workflow = workflow or build_workflow(conf)
    app.session_store = session_store or FileSessionStore(conf["session_dir"],
                                                          max_age=conf["auth_timeout_seconds"])
    app.session_store.prune()
    return app


def _session_id() -> str:
    sid = session.get("sid")
    if not sid:
        sid = secrets.token_urlsafe(24)
        session["sid"] = sid
    return sid


def _posted_action():
    for action in Action:
        if action.value in request.form:
            return action
    return None


def _render_wizard(state, error=None):
    wf = app.workflow
    enrollment = state.enrollment
    certificate_text = ""
    certificate_details = []
    if enrollment is not None and enrollment.ok:
        certificate_text = enrollment.certificate_text
        certificate_details = describe_certificate(enrollment.certificate)
    return render_template(
        "index.html",
        user=session.get("user"),
        step=int(state.step),
        form=wf.form_for_display(state),
        key_exists=state.key_exists,
        submitted=state.submitted.to_storage() if state.submitted else None,
        overall_status=state.overall_status,
        combined_log=state.combined_log,
        artifacts=state.artifacts,
        enrollment=enrollment,
        certificate_text=certificate_text,
        certificate_details=certificate_details,
        error=error,
    )


# ---------------- Endpoints ----------------

@app.route("/", methods=["GET", "POST"])
def index():
    if not is_logged_in():
        return render_template("login.html", error=None)

    store = app.session_store
    sid = _session_id()
    state = store.load(sid)

    if request.method == "POST":
        action = _posted_action()
        form_input = request.form.to_dict()
        if action is None:
            session["wizard_error"] = "Unknown wizard action."
        else:
            try:
                state = app.workflow.apply_transition(state, action, form_input)
            except InvalidTransition as e:
                print(f"[WIZARD] {e}")
                session["wizard_error"] = str(e)
            except InputError as e:
                state = app.workflow.with_form_input(state, form_input)
                session["wizard_error"] = str(e)
        store.save(sid, state)
        # post/redirect/get so a reload never replays a submit
        return redirect(url_for("index"))

    error = session.pop("wizard_error", None)
    state = app.workflow.on_read(state)
    store.save(sid, state)
    return _render_wizard(state, error=error)


@app.route("/login", methods=["POST"])
def login():
    user = check_credentials(request.form.get("username", ""), request.form.get("password", ""))
    if not user:
        return render_template("login.html", error="Invalid username or password."), 401
    old_sid = session.get("sid")
    if old_sid:
        app.session_store.delete(old_sid)
    app.session_store.prune()
    login_user(user)
    return redirect(url_for("index"))


@app.route("/logout", methods=["POST"])
def logout():
    sid = session.get("sid")
    if sid:
        app.session_store.delete(sid)
    logout_user()
    return redirect(url_for("index"))


@app.route("/download", methods=["GET"])
def download():
    if not is_logged_in():
        return Response("Unauthorized access. Please log in to download files.", status=401,
                        content_type="text/plain; charset=utf-8")
    filename = os.path.basename(request.args.get("file", "") or "")
    if not filename or filename in (".", ".."):
        return Response("File parameter is missing.", status=400, content_type="text/plain; charset=utf-8")

    path = os.path.join(app.confcertreq["cert_dir"], filename)
    if not os.path.isfile(path) or not os.access(path, os.R_OK):
        return Response("File not found or not accessible.", status=404, content_type="text/plain; charset=utf-8")

    resp = send_file(path, mimetype="application/octet-stream", as_attachment=True, download_name=filename,
                     max_age=0)
    resp.headers["Cache-Control"] = "must-revalidate"
    resp.headers["Expires"] = "0"
    return resp


@app.errorhandler(ConfigurationError)
def configuration_error(e):
    print(f"[APP] Configuration error: {e}")
    return Response(f"Server configuration error: {e}", status=500, content_type="text/plain; charset=utf-8")


# ---------------- Main ----------------

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description="Certificate request web tool")
    parser.add_argument("--config", default="certreq.yaml", help="Path to certreq.yaml")
    args = parser.parse_args()

    conf = load_yaml_conf(args.config)
    init_app(conf)
    warning = tls_warning(conf)
    if warning:
        print(warning)
    print(f"Serving on {conf['listen_host']}:{conf['listen_port']}, certificates in {conf['cert_dir']}")
    serve(app, host=conf["listen_host"], port=conf["listen_port"])
