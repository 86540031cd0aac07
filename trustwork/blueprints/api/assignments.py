# trustwork/blueprints/api/assignments.py
from flask import jsonify, request
from flask_login import current_user, login_required

from ...security import roles_required
from ...services import assignments as svc
from ...services import lifecycle
from . import api_bp
from .utils import body, arg_bool, arg_int


@api_bp.route("/assignments", methods=["POST"])
@roles_required("client")
def create_assignment():
    a = svc.create_assignment(current_user, body())
    return jsonify(a.to_dict()), 201


@api_bp.route("/assignments")
def list_assignments():
    caller = current_user if current_user.is_authenticated else None
    filters = {
        "mine": arg_bool("mine"),
        "status": request.args.get("status"),
        "kind": request.args.get("kind"),
        "remote": arg_bool("remote"),
        "q": request.args.get("q"),
        "skills": request.args.get("skills"),
        "min_budget": request.args.get("min_budget"),
    }
    page = svc.list_assignments(
        caller, filters,
        page=arg_int("page", 1),
        per_page=arg_int("per_page", 20),
        sort=request.args.get("sort", "created_at"),
    )
    page["items"] = [a.to_dict() for a in page["items"]]
    return jsonify(page)


@api_bp.route("/assignments/<assignment_id>")
def get_assignment(assignment_id):
    caller = current_user if current_user.is_authenticated else None
    payload = svc.get(assignment_id, caller).to_dict()
    # counter is updated after the read and may be lost
    svc.record_view(assignment_id, caller)
    return jsonify(payload)


@api_bp.route("/assignments/<assignment_id>", methods=["PATCH"])
@login_required
def update_assignment(assignment_id):
    return jsonify(svc.update(current_user, assignment_id, body()).to_dict())


@api_bp.route("/assignments/<assignment_id>/publish", methods=["POST"])
@login_required
def publish_assignment(assignment_id):
    return jsonify(svc.publish(current_user, assignment_id).to_dict())


@api_bp.route("/assignments/<assignment_id>/close", methods=["POST"])
@login_required
def close_assignment(assignment_id):
    return jsonify(svc.close(current_user, assignment_id, body().get("reason")).to_dict())


@api_bp.route("/assignments/<assignment_id>/cancel", methods=["POST"])
@login_required
def cancel_assignment(assignment_id):
    return jsonify(svc.cancel(current_user, assignment_id, body().get("reason")).to_dict())


@api_bp.route("/assignments/<assignment_id>/complete", methods=["POST"])
@roles_required("freelancer")
def mark_complete(assignment_id):
    return jsonify(lifecycle.mark_complete(current_user, assignment_id).to_dict())


@api_bp.route("/assignments/<assignment_id>/approve", methods=["POST"])
@roles_required("client")
def approve_completion(assignment_id):
    return jsonify(lifecycle.approve_completion(current_user, assignment_id).to_dict())


@api_bp.route("/assignments/<assignment_id>/timeline")
@login_required
def assignment_timeline(assignment_id):
    return jsonify({"items": lifecycle.timeline(current_user, assignment_id)})
