import secrets

from flask import Request, session

CSRF_SESSION_KEY = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"


def ensure_csrf_token() -> str:
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = session[CSRF_SESSION_KEY] = secrets.token_urlsafe(32)
    return token


def rotate_csrf_token() -> str:
    """New token after a privilege change (login), so a pre-login token cannot be replayed."""
    session[CSRF_SESSION_KEY] = secrets.token_urlsafe(32)
    return session[CSRF_SESSION_KEY]


def submitted_csrf_token(req: Request) -> str | None:
    # Cashier screens post JSON (order entry, quotes); everything else is a form.
    token = req.headers.get(CSRF_HEADER) or req.form.get(CSRF_SESSION_KEY)
    if not token and req.is_json:
        body = req.get_json(silent=True)
        if isinstance(body, dict):
            token = body.get(CSRF_SESSION_KEY)
    return token or None


def validate_csrf(req: Request) -> bool:
    token = submitted_csrf_token(req)
    expected = session.get(CSRF_SESSION_KEY)
    return bool(token and expected) and secrets.compare_digest(str(token), str(expected))
