# trustwork/blueprints/webhooks.py
import logging

from flask import Blueprint, request, jsonify

from ..errors import ValidationError
from ..services import webhooks as svc

log = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@webhooks_bp.route("/payments", methods=["POST"])
def payments():
    # Provider posts form-encoded fields; accept JSON too for replays.
    fields = request.form.to_dict() if request.form else (request.get_json(silent=True) or {})
    if not isinstance(fields, dict):
        raise ValidationError("Notification body must be form fields or a JSON object")
    outcome = svc.handle_notification(fields)
    log.info("webhook %s -> %s", fields.get("pf_payment_id"), outcome["result"])
    return jsonify({"ok": True, **outcome}), 200
