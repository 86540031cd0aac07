# trustwork/blueprints/api/applications.py
from flask import jsonify, request
from flask_login import current_user, login_required

from ...security import roles_required
from ...services import applications as svc
from . import api_bp
from .utils import body, upload


@api_bp.route("/assignments/<assignment_id>/applications", methods=["POST"])
@roles_required("freelancer")
def submit_application(assignment_id):
    return jsonify(svc.submit(current_user, assignment_id, body()).to_dict()), 201


@api_bp.route("/assignments/<assignment_id>/applications")
@login_required
def list_applications(assignment_id):
    rows = svc.list_for_assignment(current_user, assignment_id, request.args.get("status"))
    return jsonify({"items": [a.to_dict() for a in rows]})


@api_bp.route("/assignments/<assignment_id>/applications/stats")
@login_required
def assignment_application_stats(assignment_id):
    return jsonify(svc.stats(current_user, assignment_id))


@api_bp.route("/applications/mine")
@roles_required("freelancer")
def my_applications():
    rows = svc.list_mine(current_user, request.args.get("status"))
    return jsonify({"items": [a.to_dict() for a in rows]})


@api_bp.route("/applications/stats")
@login_required
def my_application_stats():
    return jsonify(svc.stats(current_user))


@api_bp.route("/applications/<app_id>")
@login_required
def get_application(app_id):
    return jsonify(svc.get(current_user, app_id).to_dict())


@api_bp.route("/applications/<app_id>/withdraw", methods=["POST"])
@login_required
def withdraw_application(app_id):
    return jsonify(svc.withdraw(current_user, app_id, body().get("reason")).to_dict())


@api_bp.route("/applications/<app_id>/status", methods=["POST"])
@login_required
def set_application_status(app_id):
    data = body()
    app_ = svc.set_status(current_user, app_id, data.get("status"), data.get("message"))
    return jsonify(app_.to_dict())


@api_bp.route("/applications/<app_id>/viewed", methods=["POST"])
@login_required
def mark_application_viewed(app_id):
    return jsonify(svc.mark_viewed(current_user, app_id).to_dict())


@api_bp.route("/applications/<app_id>/attachments", methods=["POST"])
@login_required
def add_application_attachment(app_id):
    kind = request.form.get("kind", "attachment")
    return jsonify(svc.add_attachment(current_user, app_id, upload(), kind=kind).to_dict()), 201
