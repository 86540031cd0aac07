# trustwork/blueprints/api/escrow.py
from flask import jsonify
from flask_login import current_user, login_required

from ...security import roles_required
from ...services import escrow as svc
from . import api_bp
from .utils import body


@api_bp.route("/assignments/<assignment_id>/escrow", methods=["POST"])
@roles_required("client")
def create_escrow(assignment_id):
    data = body()
    escrow = svc.create(current_user, assignment_id, data.get("gross_amount"))
    return jsonify(escrow.to_dict()), 201


@api_bp.route("/assignments/<assignment_id>/escrow")
@login_required
def assignment_escrows(assignment_id):
    return jsonify({"items": [e.to_dict() for e in svc.for_assignment(current_user, assignment_id)]})


@api_bp.route("/escrow/<escrow_id>")
@login_required
def get_escrow(escrow_id):
    return jsonify(svc.get(current_user, escrow_id).to_dict())


@api_bp.route("/escrow/<escrow_id>/release", methods=["POST"])
@login_required
def release_escrow(escrow_id):
    return jsonify(svc.release_full(current_user, escrow_id).to_dict())


@api_bp.route("/escrow/<escrow_id>/refund", methods=["POST"])
@login_required
def refund_escrow(escrow_id):
    return jsonify(svc.refund(current_user, escrow_id, body().get("reason") or "").to_dict())
