from __future__ import annotations

from flask import Blueprint, abort, current_app, jsonify, request

from .datastore import DataStore
from .posts import visible_posts


bp = Blueprint("users", __name__)


def get_datastore() -> DataStore:
    return current_app.extensions["datastore"]


@bp.before_request
def log_request():
    current_app.logger.debug("A request is being made to /users: %s %s", request.method, request.path)


@bp.route("/", methods=["GET"], strict_slashes=False)
def index():
    return jsonify({"users": get_datastore().list_users()})


@bp.route("/<int:user_id>", methods=["GET"])
def profile(user_id: int):
    user = get_datastore().get_user(user_id)
    if user is None:
        abort(404, description=f"User {user_id} not found")
    user["posts"] = visible_posts(user["posts"])
    return jsonify({"user": user})
