import time
from functools import wraps

from flask import current_app, jsonify, redirect, request, session, url_for


def _now() -> float:
    return time.time()


def check_credentials(username: str, password: str):
    """Run the configured auth callback; returns the user name or None."""
    if not username or not password:
        return None
    auth_func = current_app.auth_func
    user = auth_func(username=username, password=password)
    if not user:
        print(f"[AUTH] Rejected login for '{username}' from {request.remote_addr}")
        return None
    return user if isinstance(user, str) else username


def login_user(user: str) -> None:
    session.clear()
    session["logged_in"] = True
    session["user"] = user
    session["last_activity"] = _now()
    print(f"[AUTH] {user} logged in from {request.remote_addr}")


def logout_user() -> None:
    user = session.get("user")
    session.clear()
    if user:
        print(f"[AUTH] {user} logged out")


def is_logged_in() -> bool:
    """
    True while the login is fresh. Idle past `auth_timeout_seconds` clears the
    login; any authenticated request refreshes the activity stamp.
    """
    if not session.get("logged_in"):
        return False
    timeout = current_app.confcertreq["auth_timeout_seconds"]
    last = session.get("last_activity") or 0
    if _now() - float(last) >= timeout:
        print(f"[AUTH] Session of {session.get('user')} expired after inactivity")
        sid = session.get("sid")
        if sid:
            current_app.session_store.delete(sid)
        session.clear()
        return False
    session["last_activity"] = _now()
    return True


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not is_logged_in():
            return redirect(url_for("index"))
        return f(*args, **kwargs)
    return decorated_function


def api_login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not is_logged_in():
            resp = jsonify({"status": "error", "message": "Authentication required."})
            resp.status_code = 401
            return resp
        return f(*args, **kwargs)
    return decorated_function
