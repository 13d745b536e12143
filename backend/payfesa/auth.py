from __future__ import annotations

from flask import jsonify

from payfesa.extensions import db, login_manager
from payfesa.models import User
from payfesa.utils.jwt_utils import user_id_from_header


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.request_loader
def load_user_from_request(req):
    """Resolve ``Authorization: Bearer <jwt>`` to a user for @login_required."""
    user_id = user_id_from_header(req.headers.get("Authorization", ""))
    if user_id is None:
        return None
    return db.session.get(User, user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"success": False, "error": "Unauthorized", "kind": "Unauthorized"}), 401
