# trustwork/blueprints/api/disputes.py
from flask import jsonify, request
from flask_login import current_user, login_required

from ...security import roles_required
from ...services import disputes as svc
from . import api_bp
from .utils import body


@api_bp.route("/assignments/<assignment_id>/disputes", methods=["POST"])
@login_required
def open_dispute(assignment_id):
    data = body()
    d = svc.open_dispute(current_user, assignment_id, data.get("reason"), data.get("title"),
                         data.get("description"), data.get("evidence"))
    return jsonify(d.to_dict()), 201


@api_bp.route("/assignments/<assignment_id>/disputes")
@login_required
def assignment_disputes(assignment_id):
    return jsonify({"items": [d.to_dict() for d in svc.list_for_assignment(current_user, assignment_id)]})


@api_bp.route("/disputes/mine")
@login_required
def my_disputes():
    rows = svc.list_mine(current_user, request.args.get("status"))
    return jsonify({"items": [d.to_dict() for d in rows]})


@api_bp.route("/disputes/<dispute_id>")
@login_required
def get_dispute(dispute_id):
    return jsonify(svc.get(current_user, dispute_id).to_dict(with_events=True))


@api_bp.route("/disputes/<dispute_id>/timeline")
@login_required
def dispute_timeline(dispute_id):
    return jsonify({"items": svc.timeline(current_user, dispute_id)})


@api_bp.route("/disputes/<dispute_id>/respond", methods=["POST"])
@login_required
def respond_dispute(dispute_id):
    return jsonify(svc.respond(current_user, dispute_id, body().get("evidence")).to_dict())


@api_bp.route("/disputes/<dispute_id>/evidence", methods=["POST"])
@login_required
def add_dispute_evidence(dispute_id):
    data = body()
    f = request.files.get("file")
    d = svc.add_evidence(current_user, dispute_id, data.get("text"), f if f and f.filename else None)
    return jsonify(d.to_dict())


@api_bp.route("/disputes/<dispute_id>/propose", methods=["POST"])
@login_required
def propose_settlement(dispute_id):
    data = body()
    d = svc.propose_mutual(current_user, dispute_id, data.get("split_ratio"), data.get("proposal"))
    return jsonify(d.to_dict())


@api_bp.route("/disputes/<dispute_id>/resolve", methods=["POST"])
@login_required
def resolve_dispute(dispute_id):
    data = body()
    d = svc.resolve(current_user, dispute_id, data.get("decision"), data.get("summary"),
                    split_ratio=data.get("split_ratio"), adjustment=data.get("adjustment"))
    return jsonify(d.to_dict())


@api_bp.route("/disputes/<dispute_id>/request-response", methods=["POST"])
@roles_required("admin")
def request_dispute_response(dispute_id):
    return jsonify(svc.request_response(current_user, dispute_id).to_dict())


@api_bp.route("/disputes/<dispute_id>/escalate", methods=["POST"])
@roles_required("admin")
def escalate_dispute(dispute_id):
    return jsonify(svc.escalate(current_user, dispute_id).to_dict())


@api_bp.route("/disputes/<dispute_id>/close", methods=["POST"])
@roles_required("admin")
def close_dispute(dispute_id):
    return jsonify(svc.close(current_user, dispute_id).to_dict())
