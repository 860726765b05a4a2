import os
from pathlib import Path
from typing import Any, Mapping, Optional

from flask import Flask, current_app, jsonify
from flask_login import LoginManager

from .datastore import DEFAULT_ASSEMBLY_WORKERS, DEFAULT_TIMEOUT, DataStore, InfrastructureError, NotFoundError


login_manager = LoginManager()


def _error(name: str, message: str, status: int):
    return jsonify({"name": name, "message": message}), status


def create_app(config: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret-key")
    app.config["DATA_DIR"] = os.getenv("JUICEBOX_DATA_DIR", str(Path(app.root_path).parent / "data"))
    app.config["DB_TIMEOUT"] = float(os.getenv("JUICEBOX_DB_TIMEOUT", DEFAULT_TIMEOUT))
    app.config["ASSEMBLY_WORKERS"] = int(os.getenv("JUICEBOX_ASSEMBLY_WORKERS", DEFAULT_ASSEMBLY_WORKERS))
    if config:
        app.config.update(config)

    datastore = DataStore.from_path(
        Path(app.config["DATA_DIR"]),
        timeout=app.config["DB_TIMEOUT"],
        max_workers=app.config["ASSEMBLY_WORKERS"],
    )
    app.extensions["datastore"] = datastore

    login_manager.init_app(app)

    from .auth import bp as auth_bp
    from .posts import bp as posts_bp
    from .tags import bp as tags_bp
    from .users import bp as users_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(posts_bp, url_prefix="/api/posts")
    app.register_blueprint(tags_bp, url_prefix="/api/tags")
    app.register_blueprint(users_bp, url_prefix="/api/users")

    @app.errorhandler(NotFoundError)
    def handle_not_found(exc: NotFoundError):
        return _error(type(exc).__name__, str(exc), 404)

    @app.errorhandler(InfrastructureError)
    def handle_infrastructure_error(exc: InfrastructureError):
        app.logger.error("Database unavailable: %s", exc)
        return _error("InfrastructureError", "The database is temporarily unavailable, try again", 503)

    @app.errorhandler(400)
    def handle_bad_request(exc):
        return _error("BadRequest", getattr(exc, "description", "Bad request"), 400)

    @app.errorhandler(403)
    def handle_forbidden(exc):
        return _error("Forbidden", getattr(exc, "description", "Forbidden"), 403)

    @app.errorhandler(404)
    def handle_missing(exc):
        return _error("NotFound", getattr(exc, "description", "Not found"), 404)

    return app


@login_manager.user_loader
def load_user(user_id: str):
    datastore: DataStore = current_app.extensions.get("datastore")
    if not datastore:
        return None
    try:
        return datastore.load_user(int(user_id))
    except ValueError:
        return None


@login_manager.unauthorized_handler
def unauthorized():
    return _error("UnauthorizedError", "You must be logged in to perform this action", 401)
