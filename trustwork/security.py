# trustwork/security.py
"""Principal & role resolution.

Identity is issued upstream; requests carry a bearer token that is an
itsdangerous-signed ``{"uid": <principal id>}`` payload. Flask-Login resolves
it into ``current_user`` through the request loader registered here.
"""
from functools import wraps

from flask import current_app, jsonify
from flask_login import current_user
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired

from .extensions import db, login_manager
from .errors import AuthenticationError, AuthorizationError
from .models.user import User


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(
        current_app.config["SECRET_KEY"],
        salt=current_app.config.get("AUTH_TOKEN_SALT", "trustwork-principal"),
    )


def issue_token(user: User) -> str:
    return _serializer().dumps({"uid": user.id})


def verify_token(token: str):
    """Return the active principal for a token, or None."""
    if not token:
        return None
    try:
        data = _serializer().loads(token, max_age=current_app.config.get("AUTH_TOKEN_MAX_AGE"))
    except (SignatureExpired, BadSignature):
        return None
    uid = data.get("uid") if isinstance(data, dict) else None
    if uid is None:
        return None
    user = db.session.get(User, int(uid))
    if not user or not user.is_active:
        return None
    return user


@login_manager.request_loader
def load_user_from_request(req):
    header = req.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return verify_token(token.strip())


@login_manager.unauthorized_handler
def unauthorized():
    err = AuthenticationError("Authentication required")
    return jsonify({"error": err.to_dict()}), err.http_status


# -----------------
# Role checks
# -----------------

def require_principal(principal):
    if principal is None or not getattr(principal, "is_authenticated", False):
        raise AuthenticationError("Authentication required")
    if not principal.is_active:
        raise AuthenticationError("Principal is suspended")
    return principal


def require_role(principal, *roles):
    require_principal(principal)
    if principal.role not in roles:
        raise AuthorizationError(f"Requires role: {', '.join(roles)}")
    return principal


def roles_required(*roles):
    """Route decorator: the caller must be authenticated and hold one of ``roles``."""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            require_role(current_user, *roles)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def accepted_freelancer_id(assignment):
    for app_ in assignment.applications or []:
        if app_.status == "accepted":
            return app_.freelancer_id
    return None


def is_participant(principal, assignment) -> bool:
    """Owner, accepted freelancer or admin."""
    if principal is None or not getattr(principal, "is_authenticated", False):
        return False
    if principal.is_admin:
        return True
    return principal.id in (assignment.owner_id, accepted_freelancer_id(assignment))


def require_participant(principal, assignment):
    require_principal(principal)
    if not is_participant(principal, assignment):
        raise AuthorizationError("Not a participant of this assignment")
    return principal


def require_owner(principal, assignment):
    require_principal(principal)
    if principal.id != assignment.owner_id:
        raise AuthorizationError("Only the assignment owner may do this")
    return principal
