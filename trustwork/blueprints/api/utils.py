from flask import request

from ...errors import ValidationError


def body() -> dict:
    """JSON body, or form fields for multipart requests."""
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict() if request.form else {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def arg_bool(name):
    raw = request.args.get(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def arg_int(name, default):
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError.field(name, "invalid", f"{name} must be an integer")


def upload(field="file"):
    f = request.files.get(field)
    if f is None or not f.filename:
        raise ValidationError.field(field, "required", "A file upload is required")
    return f
