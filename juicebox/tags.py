from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from .datastore import DataStore
from .posts import visible_posts


bp = Blueprint("tags", __name__)


def get_datastore() -> DataStore:
    return current_app.extensions["datastore"]


@bp.before_request
def log_request():
    current_app.logger.debug("A request is being made to /tags: %s %s", request.method, request.path)


@bp.route("/", methods=["GET"], strict_slashes=False)
def index():
    return jsonify({"tags": get_datastore().list_tags()})


@bp.route("/<tag_name>/posts", methods=["GET"])
def posts_by_tag(tag_name: str):
    posts = visible_posts(get_datastore().list_posts_by_tag(tag_name))
    return jsonify({"posts": posts})
