from flask import Blueprint, g, redirect, url_for

from app.pos.rbac import home_endpoint_for

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    """Send each role to its own landing page."""
    return redirect(url_for(home_endpoint_for(getattr(g, "current_user", None))))


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for the load balancer. No DB access.
    """
    return "ok", 200
