# trustwork/blueprints/api/milestones.py
from flask import jsonify
from flask_login import current_user, login_required

from ...errors import ValidationError
from ...services import milestones as svc
from . import api_bp
from .utils import body, upload


@api_bp.route("/gigs/<gig_id>/milestones", methods=["POST"])
@login_required
def create_milestones(gig_id):
    items = body().get("milestones")
    if not isinstance(items, list):
        raise ValidationError.field("milestones", "required", "milestones must be a list")
    rows = svc.create_batch(current_user, gig_id, items)
    return jsonify({"items": [m.to_dict() for m in rows]}), 201


@api_bp.route("/gigs/<gig_id>/milestones")
@login_required
def list_milestones(gig_id):
    return jsonify({"items": [m.to_dict() for m in svc.get_for_gig(current_user, gig_id)]})


@api_bp.route("/gigs/<gig_id>/progress")
@login_required
def gig_progress(gig_id):
    return jsonify(svc.progress(current_user, gig_id))


@api_bp.route("/milestones/<milestone_id>/status", methods=["POST"])
@login_required
def update_milestone_status(milestone_id):
    data = body()
    m = svc.update_status(current_user, milestone_id, data.get("status"),
                          files=data.get("files"), links=data.get("links"),
                          notes=data.get("notes"))
    return jsonify(m.to_dict())


@api_bp.route("/milestones/<milestone_id>/start", methods=["POST"])
@login_required
def start_milestone(milestone_id):
    return jsonify(svc.start(current_user, milestone_id).to_dict())


@api_bp.route("/milestones/<milestone_id>/submit", methods=["POST"])
@login_required
def submit_milestone(milestone_id):
    data = body()
    m = svc.submit(current_user, milestone_id, files=data.get("files"),
                   links=data.get("links"), notes=data.get("notes"))
    return jsonify(m.to_dict())


@api_bp.route("/milestones/<milestone_id>/deliverables", methods=["POST"])
@login_required
def attach_deliverable(milestone_id):
    return jsonify(svc.attach_deliverable(current_user, milestone_id, upload()).to_dict()), 201


@api_bp.route("/milestones/<milestone_id>/approve", methods=["POST"])
@login_required
def approve_milestone(milestone_id):
    return jsonify(svc.approve(current_user, milestone_id, body().get("notes")).to_dict())


@api_bp.route("/milestones/<milestone_id>/reject", methods=["POST"])
@login_required
def reject_milestone(milestone_id):
    return jsonify(svc.reject(current_user, milestone_id, body().get("notes")).to_dict())


@api_bp.route("/milestones/<milestone_id>/request-revision", methods=["POST"])
@login_required
def request_milestone_revision(milestone_id):
    return jsonify(svc.request_revision(current_user, milestone_id, body().get("notes")).to_dict())
