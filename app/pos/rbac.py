from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, redirect, request, url_for

from app.pos.models import User

ADMIN = "admin"
STORE_MANAGER = "store_manager"
CASHIER = "cashier"
EMPLOYEE = "employee"

ROLE_NAMES = {
    ADMIN: "Administrator",
    STORE_MANAGER: "Store Manager",
    CASHIER: "Cashier",
    EMPLOYEE: "Employee (Rider)",
}

MANAGERS = (ADMIN, STORE_MANAGER)

# First matching role wins.
_HOME_ENDPOINTS = (
    (ADMIN, "admin.store_dashboard"),
    (STORE_MANAGER, "admin.store_dashboard"),
    (CASHIER, "orders.cashier_queue"),
    (EMPLOYEE, "remit.rider_home"),
)


def user_has_role(user: User | None, *role_keys: str) -> bool:
    if not user or not user.is_active:
        return False
    return bool(user.role_keys.intersection(role_keys))


def home_endpoint_for(user: User | None) -> str:
    if user and user.is_active:
        for key, endpoint in _HOME_ENDPOINTS:
            if key in user.role_keys:
                return endpoint
    return "auth.login_get"


def require_role(*role_keys: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Gate a view to users holding any of role_keys.

    Anonymous users go to login; signed-in users without the role are sent to their own home page.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                nxt = request.full_path or request.path
                # Avoid trailing '?' from full_path when there is no query string.
                if nxt.endswith("?"):
                    nxt = nxt[:-1]
                return redirect(url_for("auth.login_get", next=nxt))
            if not user_has_role(user, *role_keys):
                g.missing_role = ",".join(role_keys)
                return redirect(url_for(home_endpoint_for(user)))
            return fn(*args, **kwargs)

        return wrapped

    return decorator
