# trustwork/blueprints/api/reviews.py
from flask import jsonify, request
from flask_login import current_user, login_required

from ...security import roles_required
from ...services import reviews as svc
from . import api_bp
from .utils import body


@api_bp.route("/applications/<app_id>/can-review")
@login_required
def can_review(app_id):
    return jsonify(svc.can_review(app_id, current_user))


@api_bp.route("/applications/<app_id>/reviews", methods=["POST"])
@login_required
def submit_review(app_id):
    data = body()
    r = svc.submit(app_id, current_user, data.get("ratings"), data.get("review_text"),
                   data.get("overall_rating"))
    return jsonify(r.to_dict()), 201


@api_bp.route("/reviews/<review_id>", methods=["PATCH"])
@login_required
def update_review(review_id):
    data = body()
    r = svc.update_review(review_id, current_user, data.get("ratings"), data.get("review_text"),
                          data.get("overall_rating"))
    return jsonify(r.to_dict())


@api_bp.route("/reviews/<review_id>/flag", methods=["POST"])
@login_required
def flag_review(review_id):
    return jsonify(svc.flag(current_user, review_id, body().get("reason")).to_dict())


@api_bp.route("/reviews/<review_id>/helpful", methods=["POST"])
@login_required
def helpful_review(review_id):
    return jsonify(svc.mark_helpful(current_user, review_id).to_dict())


@api_bp.route("/reviews/<review_id>/moderate", methods=["POST"])
@roles_required("admin")
def moderate_review(review_id):
    data = body()
    return jsonify(svc.moderate(current_user, review_id, data.get("status"), data.get("notes")).to_dict())


@api_bp.route("/users/<int:user_id>/reviews")
def user_reviews(user_id):
    out = svc.get_for_user(user_id, request.args.get("reviewer_type"))
    out["reviews"] = [r.to_dict() for r in out["reviews"]]
    return jsonify(out)


@api_bp.route("/assignments/<assignment_id>/reviews")
@login_required
def assignment_reviews(assignment_id):
    return jsonify({"items": [r.to_dict() for r in svc.get_for_assignment(current_user, assignment_id)]})
