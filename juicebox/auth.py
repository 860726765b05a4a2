from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user

from .datastore import DataStore


bp = Blueprint("auth", __name__, url_prefix="/api/users")


def get_datastore() -> DataStore:
    return current_app.extensions["datastore"]


def _credentials():
    payload = request.get_json(silent=True) or {}
    username = str(payload.get("username") or "").strip()
    password = str(payload.get("password") or "")
    return payload, username, password


@bp.route("/login", methods=["POST"])
def login():
    _, username, password = _credentials()
    if not username or not password:
        return jsonify({"name": "MissingCredentialsError", "message": "Please supply both a username and password"}), 400
    user = get_datastore().verify_user(username, password)
    if user is None:
        return jsonify({"name": "IncorrectCredentialsError", "message": "Username or password is incorrect"}), 401
    if not login_user(user):
        return jsonify({"name": "InactiveUserError", "message": "This account has been deactivated"}), 403
    current_app.logger.info("User %s logged in", username)
    return jsonify({"user": user.to_public(), "message": "you're logged in!"})


@bp.route("/register", methods=["POST"])
def register():
    payload, username, password = _credentials()
    if not username or not password:
        return jsonify({"name": "MissingCredentialsError", "message": "Please supply both a username and password"}), 400
    user = get_datastore().create_user(
        username=username,
        password=password,
        name=str(payload.get("name") or ""),
        location=str(payload.get("location") or ""),
    )
    if user is None:
        return jsonify({"name": "UserExistsError", "message": "A user by that username already exists"}), 409
    login_user(user)
    current_app.logger.info("Registered user %s", username)
    return jsonify({"user": user.to_public(), "message": "thank you for signing up"}), 201


@bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"message": "you're logged out"})


@bp.route("/me", methods=["GET"])
@login_required
def me():
    user = get_datastore().get_user(current_user.id)
    if user is None:
        return jsonify({"name": "UserNotFound", "message": "Your account no longer exists"}), 404
    return jsonify({"user": user})


@bp.route("/me", methods=["PATCH"])
@login_required
def update_me():
    payload = request.get_json(silent=True) or {}
    fields = {}
    for key in ("name", "location"):
        if key in payload:
            if not isinstance(payload[key], str):
                return jsonify({"name": "ValidationError", "message": f"{key} must be a string"}), 400
            fields[key] = payload[key]
    user = get_datastore().update_user(current_user.id, **fields)
    return jsonify({"user": user})
