from __future__ import annotations

import uuid
from collections import defaultdict, deque
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for
from werkzeug.security import check_password_hash

from app.pos.audit import record_event
from app.pos.db import db_session
from app.pos.models import User
from app.pos.rbac import CASHIER, EMPLOYEE, home_endpoint_for, user_has_role
from app.pos.security import rotate_csrf_token

bp = Blueprint("auth", __name__)

_PUBLIC_PREFIXES = ("/static/", "/health", "/healthz")


class LoginThrottle:
    """Login attempts per client address over a sliding window, kept in process memory."""

    def __init__(self, limit: int = 5, window_seconds: int = 300):
        self.limit = limit
        self.window = timedelta(seconds=window_seconds)
        self._hits: dict[str, deque] = defaultdict(deque)

    def blocked(self, key: str) -> bool:
        hits = self._hits[key]
        cutoff = datetime.utcnow() - self.window
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return len(hits) >= self.limit

    def hit(self, key: str) -> None:
        self._hits[key].append(datetime.utcnow())

    def reset(self, key: str) -> None:
        self._hits.pop(key, None)


throttle = LoginThrottle()


def load_current_user() -> None:
    """Resolve g.current_user from the session cookie and tag the request with an id for logs."""
    g.request_id = getattr(g, "request_id", None) or uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(_PUBLIC_PREFIXES):
        return
    user_id = session.get("user_id")
    if not user_id:
        return
    try:
        user = db_session().get(User, int(user_id))
    except Exception as e:
        current_app.logger.error("could not load session user %s (request_id=%s): %s", user_id, g.request_id, e)
        session.pop("user_id", None)
        return
    if user is None or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user


def _safe_next(raw: str | None) -> str | None:
    nxt = (raw or "").strip()
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def _login_block_reason(user: User) -> str | None:
    # Rider logins ride on their Employee row; a deactivated rider cannot sign in.
    if user_has_role(user, EMPLOYEE) and user.employee is not None and not user.employee.active:
        return "Your rider profile is inactive. Ask the store manager."
    return None


def _greet_cashier(s, user: User) -> None:
    from app.pos.modules.cashier_shifts.models import SHIFT_OPENING_DISPUTED, SHIFT_PENDING_ACCEPT
    from app.pos.modules.cashier_shifts.service import active_shift_for

    shift = active_shift_for(s, user.id)
    if shift is None:
        flash("No open shift yet. Ask the manager to open your drawer.", "info")
    elif shift.status == SHIFT_PENDING_ACCEPT:
        flash(f"Opening float of {shift.opening_float:,.2f} is waiting for your count.", "info")
    elif shift.status == SHIFT_OPENING_DISPUTED:
        flash("Your opening float dispute is still with the manager.", "warning")


@bp.get("/login")
def login_get():
    return render_template("auth/login.html", next=_safe_next(request.args.get("next")) or "")


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = _safe_next(request.form.get("next"))
    ip = request.remote_addr or "unknown"

    if throttle.blocked(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))
    throttle.hit(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if user is None or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
        )
        s.commit()
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get", next=nxt) if nxt else url_for("auth.login_get"))

    blocked = _login_block_reason(user)
    if blocked:
        record_event(s, actor=user, action="auth.login_blocked", entity_type="User", entity_id=user.id, reason=blocked)
        s.commit()
        flash(blocked, "danger")
        return redirect(url_for("auth.login_get"))

    session.clear()
    session["user_id"] = user.id
    rotate_csrf_token()
    throttle.reset(ip)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=user.id)
    s.commit()
    current_app.logger.info("login user=%s request_id=%s", user.email, g.request_id)

    if user_has_role(user, CASHIER):
        _greet_cashier(s, user)
    return redirect(nxt or url_for(home_endpoint_for(user)))


@bp.get("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user is not None:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=user.id)
        s.commit()
    session.clear()
    return redirect(url_for("auth.login_get"))
