from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from flask import Blueprint, abort, current_app, jsonify, request
from flask_login import current_user, login_required

from .datastore import DataStore, PostPatch


bp = Blueprint("posts", __name__)


def get_datastore() -> DataStore:
    return current_app.extensions["datastore"]


@bp.before_request
def log_request():
    current_app.logger.debug("A request is being made to /posts: %s %s", request.method, request.path)


def is_visible(post: Dict[str, Any]) -> bool:
    if post.get("active"):
        return True
    if not current_user.is_authenticated:
        return False
    return post.get("author", {}).get("id") == current_user.id


def visible_posts(posts: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [post for post in posts if is_visible(post)]


def parse_tag_names(raw: Any) -> Optional[List[str]]:
    """Accept tags as a list of names or as one whitespace separated string."""
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw.split()
    if isinstance(raw, list) and all(isinstance(item, str) for item in raw):
        return raw
    abort(400, description="tags must be a list of strings or a space separated string")


def _require_owned_post(post_id: int) -> Dict[str, Any]:
    post = get_datastore().get_post(post_id)
    if post is None or not is_visible(post):
        abort(404, description=f"Post {post_id} not found")
    if post["author"]["id"] != current_user.id:
        abort(403, description="You cannot edit a post that is not yours")
    return post


@bp.route("/", methods=["GET"], strict_slashes=False)
def index():
    posts = visible_posts(get_datastore().list_posts())
    return jsonify({"posts": posts})


@bp.route("/", methods=["POST"], strict_slashes=False)
@login_required
def create():
    payload = request.get_json(silent=True) or {}
    title = str(payload.get("title") or "").strip()
    content = str(payload.get("content") or "").strip()
    if not title or not content:
        abort(400, description="title and content are required")
    tags = parse_tag_names(payload.get("tags")) or []
    post = get_datastore().create_post(
        author_id=current_user.id,
        title=title,
        content=content,
        tags=tags,
    )
    current_app.logger.info("User %s created post %s", current_user.username, post["id"])
    return jsonify({"post": post}), 201


@bp.route("/<int:post_id>", methods=["GET"])
def detail(post_id: int):
    post = get_datastore().get_post(post_id)
    if post is None or not is_visible(post):
        abort(404, description=f"Post {post_id} not found")
    return jsonify({"post": post})


@bp.route("/<int:post_id>", methods=["PATCH"])
@login_required
def update(post_id: int):
    _require_owned_post(post_id)
    payload = request.get_json(silent=True) or {}
    patch = PostPatch(tags=parse_tag_names(payload.get("tags")))
    for key in ("title", "content"):
        if key in payload:
            value = payload[key]
            if not isinstance(value, str) or not value.strip():
                abort(400, description=f"{key} must be a non-empty string")
            setattr(patch, key, value.strip())
    if "active" in payload:
        if not isinstance(payload["active"], bool):
            abort(400, description="active must be a boolean")
        patch.active = payload["active"]
    post = get_datastore().update_post(post_id, patch)
    return jsonify({"post": post})


@bp.route("/<int:post_id>", methods=["DELETE"])
@login_required
def delete(post_id: int):
    _require_owned_post(post_id)
    post = get_datastore().update_post(post_id, PostPatch(active=False))
    current_app.logger.info("User %s deactivated post %s", current_user.username, post_id)
    return jsonify({"post": post})
