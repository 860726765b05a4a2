from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from threading import Lock, RLock, Thread, current_thread, local
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar, cast

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash


__all__ = [
    "DataStore",
    "DataStoreError",
    "InfrastructureError",
    "NotFoundError",
    "PostNotFound",
    "PostPatch",
    "SQLiteConnectionManager",
    "User",
    "UserNotFound",
]


DB_FILENAME = "juicebox.sqlite3"
DEFAULT_TIMEOUT = 5.0
DEFAULT_ASSEMBLY_WORKERS = 4


logger = logging.getLogger(__name__)


class DataStoreError(Exception):
    """Base error for data layer failures."""


class NotFoundError(DataStoreError, LookupError):
    """The requested row does not exist."""


class PostNotFound(NotFoundError):
    """No post with the given identifier."""


class UserNotFound(NotFoundError):
    """No user with the given identifier."""


class InfrastructureError(DataStoreError):
    """The database was unreachable, locked or too slow. Safe to retry."""


F = TypeVar("F", bound=Callable[..., Any])

TRANSIENT_ERROR_MARKERS = (
    "locked",
    "busy",
    "disk i/o error",
    "unable to open database file",
    "interrupted",
)


def _classify_operational_error(exc: sqlite3.OperationalError) -> DataStoreError:
    message = str(exc)
    if any(marker in message.lower() for marker in TRANSIENT_ERROR_MARKERS):
        return InfrastructureError(message)
    # bad SQL and limits like "too many SQL variables" fail the same way on retry
    return DataStoreError(message)


def _translate_errors(func: F) -> F:
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except sqlite3.OperationalError as exc:
            raise _classify_operational_error(exc) from exc

    return cast(F, wrapper)


class SQLiteConnectionManager:
    def __init__(self, db_path: Path, *, timeout: float = DEFAULT_TIMEOUT):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = float(timeout)
        self._local = local()
        self._opened: Dict[Thread, sqlite3.Connection] = {}
        self._opened_lock = Lock()

    def get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "connection", None)
        if conn is None:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.timeout,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.connection = conn
            with self._opened_lock:
                for thread in [thread for thread in self._opened if not thread.is_alive()]:
                    self._opened.pop(thread).close()
                self._opened[current_thread()] = conn
        return conn

    def close_all(self) -> None:
        # pool workers keep their own connections, only reachable from here
        with self._opened_lock:
            opened, self._opened = self._opened, {}
        for conn in opened.values():
            conn.close()
        self._local.connection = None


@dataclass
class User(UserMixin):
    id: int
    username: str
    password_hash: str
    name: str = ""
    location: str = ""
    active: bool = True

    def get_id(self) -> str:  # type: ignore[override]
        return str(self.id)

    @property
    def is_active(self) -> bool:  # type: ignore[override]
        return self.active

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "name": self.name,
            "location": self.location,
            "active": self.active,
        }


@dataclass
class PostPatch:
    """Field mask for a partial post update.

    ``None`` marks a field as absent. ``tags=[]`` is present and clears every
    tag, while ``tags=None`` leaves the post's tags alone.
    """

    title: Optional[str] = None
    content: Optional[str] = None
    active: Optional[bool] = None
    tags: Optional[List[str]] = None

    def column_updates(self) -> List[Tuple[str, Any]]:
        updates: List[Tuple[str, Any]] = []
        if self.title is not None:
            updates.append(("title", self.title))
        if self.content is not None:
            updates.append(("content", self.content))
        if self.active is not None:
            updates.append(("active", 1 if self.active else 0))
        return updates

    def is_empty(self) -> bool:
        return not self.column_updates() and self.tags is None


class DataStore:
    def __init__(
        self,
        connection_manager: SQLiteConnectionManager,
        *,
        max_workers: int = DEFAULT_ASSEMBLY_WORKERS,
    ):
        self._connection_manager = connection_manager
        self.timeout = connection_manager.timeout
        self._setup_lock = RLock()
        self._setup_complete = False
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)),
            thread_name_prefix="post-assembly",
        )
        self._setup_database()

    @classmethod
    def from_path(
        cls,
        base_path: Path,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_workers: int = DEFAULT_ASSEMBLY_WORKERS,
    ) -> "DataStore":
        base_path = Path(base_path)
        base_path.mkdir(parents=True, exist_ok=True)
        manager = SQLiteConnectionManager(base_path / DB_FILENAME, timeout=timeout)
        return cls(manager, max_workers=max_workers)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._connection_manager.close_all()

    def _conn(self) -> sqlite3.Connection:
        return self._connection_manager.get_connection()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._conn()
        with conn:
            yield conn

    def _setup_database(self) -> None:
        if self._setup_complete:
            return
        with self._setup_lock:
            if self._setup_complete:
                return
            try:
                self._ensure_schema(self._conn())
            except sqlite3.OperationalError as exc:
                raise _classify_operational_error(exc) from exc
            self._setup_complete = True

    @staticmethod
    def _ensure_schema(conn: sqlite3.Connection) -> None:
        with conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    location TEXT NOT NULL DEFAULT '',
                    active INTEGER NOT NULL DEFAULT 1
                );

                CREATE TABLE IF NOT EXISTS posts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    author_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    FOREIGN KEY(author_id) REFERENCES users(id)
                );

                CREATE INDEX IF NOT EXISTS idx_posts_author ON posts(author_id);

                CREATE TABLE IF NOT EXISTS tags (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE
                );

                CREATE TABLE IF NOT EXISTS post_tags (
                    post_id INTEGER NOT NULL,
                    tag_id INTEGER NOT NULL,
                    PRIMARY KEY (post_id, tag_id),
                    FOREIGN KEY(post_id) REFERENCES posts(id),
                    FOREIGN KEY(tag_id) REFERENCES tags(id)
                );

                CREATE INDEX IF NOT EXISTS idx_post_tags_tag ON post_tags(tag_id);
                """
            )

    # Users ------------------------------------------------------------

    @_translate_errors
    def create_user(
        self,
        username: str,
        password: str,
        name: str = "",
        location: str = "",
    ) -> Optional[User]:
        """Create a user, or return ``None`` when the username is taken."""
        username = (username or "").strip()
        if not username:
            raise ValueError("username must not be blank")
        password_hash = generate_password_hash(password)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO users (username, password_hash, name, location)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(username) DO NOTHING
                """,
                (username, password_hash, name.strip(), location.strip()),
            )
            if cursor.rowcount == 0:
                logger.debug("Username %s already taken", username)
                return None
            user_id = cursor.lastrowid
        return User(
            id=user_id,
            username=username,
            password_hash=password_hash,
            name=name.strip(),
            location=location.strip(),
            active=True,
        )

    @_translate_errors
    def list_users(self) -> List[Dict[str, Any]]:
        rows = self._conn().execute(
            "SELECT id, username, name, location, active FROM users ORDER BY id"
        ).fetchall()
        return [self._user_row_to_dict(row) for row in rows]

    @_translate_errors
    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        row = self._conn().execute(
            "SELECT id, username, name, location, active FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        if not row:
            return None
        user = self._user_row_to_dict(row)
        user["posts"] = self.list_posts_by_author(user_id)
        return user

    @_translate_errors
    def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        row = self._conn().execute(
            "SELECT id, username, name, location, active FROM users WHERE username = ?",
            (username,),
        ).fetchone()
        return self._user_row_to_dict(row) if row else None

    @_translate_errors
    def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        location: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> Dict[str, Any]:
        updates: List[str] = []
        params: List[Any] = []
        if name is not None:
            updates.append("name = ?")
            params.append(name.strip())
        if location is not None:
            updates.append("location = ?")
            params.append(location.strip())
        if active is not None:
            updates.append("active = ?")
            params.append(1 if active else 0)
        with self._transaction() as conn:
            if not self._user_exists(conn, user_id):
                raise UserNotFound(f"user {user_id} does not exist")
            if updates:
                params.append(user_id)
                conn.execute(f"UPDATE users SET {', '.join(updates)} WHERE id = ?", params)
        row = self._conn().execute(
            "SELECT id, username, name, location, active FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        return self._user_row_to_dict(row)

    @_translate_errors
    def load_user(self, user_id: int) -> Optional[User]:
        row = self._conn().execute(
            "SELECT id, username, password_hash, name, location, active FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        return self._user_from_row(row) if row else None

    @_translate_errors
    def verify_user(self, username: str, password: str) -> Optional[User]:
        row = self._conn().execute(
            "SELECT id, username, password_hash, name, location, active FROM users WHERE username = ?",
            (username,),
        ).fetchone()
        if not row:
            return None
        if not check_password_hash(row["password_hash"], password):
            return None
        return self._user_from_row(row)

    # Tags -------------------------------------------------------------

    @_translate_errors
    def create_tags(self, names: Iterable[str]) -> List[Dict[str, Any]]:
        """Return the canonical tag rows for ``names``, creating missing ones.

        Existing tags are never modified, so concurrent callers with
        overlapping names all end up with the same rows.
        """
        tag_names = self._normalize_tag_names(names)
        if not tag_names:
            return []
        with self._transaction() as conn:
            return self._create_tags(conn, tag_names)

    @_translate_errors
    def list_tags(self) -> List[Dict[str, Any]]:
        rows = self._conn().execute("SELECT id, name FROM tags ORDER BY id").fetchall()
        return [self._tag_row_to_dict(row) for row in rows]

    # Posts ------------------------------------------------------------

    @_translate_errors
    def get_post(self, post_id: int) -> Optional[Dict[str, Any]]:
        return self._assemble_post(self._conn(), post_id)

    @_translate_errors
    def create_post(
        self,
        author_id: int,
        title: str,
        content: str,
        tags: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        tag_names = self._normalize_tag_names(tags)
        with self._transaction() as conn:
            if not self._user_exists(conn, author_id):
                raise UserNotFound(f"user {author_id} does not exist")
            cursor = conn.execute(
                "INSERT INTO posts (author_id, title, content) VALUES (?, ?, ?)",
                (author_id, title, content),
            )
            post_id = cursor.lastrowid
            canonical = self._create_tags(conn, tag_names)
            self._add_tags_to_post(conn, post_id, canonical)
        logger.debug("Created post %s for user %s with %d tags", post_id, author_id, len(canonical))
        return self._require_post(post_id)

    @_translate_errors
    def update_post(self, post_id: int, patch: PostPatch) -> Dict[str, Any]:
        updates = patch.column_updates()
        with self._transaction() as conn:
            exists = conn.execute("SELECT 1 FROM posts WHERE id = ?", (post_id,)).fetchone()
            if not exists:
                raise PostNotFound(f"post {post_id} does not exist")
            if updates:
                assignments = ", ".join(f"{column} = ?" for column, _ in updates)
                params = [value for _, value in updates]
                params.append(post_id)
                conn.execute(f"UPDATE posts SET {assignments} WHERE id = ?", params)
            if patch.tags is not None:
                canonical = self._create_tags(conn, self._normalize_tag_names(patch.tags))
                self._resync_post_tags(conn, post_id, canonical)
        return self._require_post(post_id)

    # Query helpers ----------------------------------------------------

    @_translate_errors
    def list_posts(self) -> List[Dict[str, Any]]:
        rows = self._conn().execute("SELECT id FROM posts ORDER BY id").fetchall()
        return self._assemble_many([row["id"] for row in rows])

    @_translate_errors
    def list_posts_by_author(self, author_id: int) -> List[Dict[str, Any]]:
        rows = self._conn().execute(
            "SELECT id FROM posts WHERE author_id = ? ORDER BY id",
            (author_id,),
        ).fetchall()
        return self._assemble_many([row["id"] for row in rows])

    @_translate_errors
    def list_posts_by_tag(self, tag_name: str) -> List[Dict[str, Any]]:
        rows = self._conn().execute(
            """
            SELECT p.id
            FROM posts AS p
            JOIN post_tags AS pt ON p.id = pt.post_id
            JOIN tags AS t ON t.id = pt.tag_id
            WHERE t.name = ?
            ORDER BY p.id
            """,
            (tag_name,),
        ).fetchall()
        return self._assemble_many([row["id"] for row in rows])

    # Internal helpers -------------------------------------------------

    def _create_tags(self, conn: sqlite3.Connection, tag_names: Sequence[str]) -> List[Dict[str, Any]]:
        if not tag_names:
            return []
        cursor = conn.executemany(
            "INSERT INTO tags (name) VALUES (?) ON CONFLICT(name) DO NOTHING",
            [(name,) for name in tag_names],
        )
        if cursor.rowcount > 0:
            logger.debug("Created %d new tags", cursor.rowcount)
        placeholders = ",".join(["?"] * len(tag_names))
        rows = conn.execute(
            f"SELECT id, name FROM tags WHERE name IN ({placeholders}) ORDER BY name",
            list(tag_names),
        ).fetchall()
        return [self._tag_row_to_dict(row) for row in rows]

    def _add_tags_to_post(self, conn: sqlite3.Connection, post_id: int, tags: Sequence[Dict[str, Any]]) -> int:
        if not tags:
            return 0
        cursor = conn.executemany(
            """
            INSERT INTO post_tags (post_id, tag_id) VALUES (?, ?)
            ON CONFLICT(post_id, tag_id) DO NOTHING
            """,
            [(post_id, tag["id"]) for tag in tags],
        )
        return max(cursor.rowcount, 0)

    def _resync_post_tags(self, conn: sqlite3.Connection, post_id: int, tags: Sequence[Dict[str, Any]]) -> None:
        keep_ids = [tag["id"] for tag in tags]
        if keep_ids:
            placeholders = ",".join(["?"] * len(keep_ids))
            removed = conn.execute(
                f"DELETE FROM post_tags WHERE post_id = ? AND tag_id NOT IN ({placeholders})",
                (post_id, *keep_ids),
            ).rowcount
        else:
            removed = conn.execute("DELETE FROM post_tags WHERE post_id = ?", (post_id,)).rowcount
        added = self._add_tags_to_post(conn, post_id, tags)
        logger.debug("Resynced tags of post %s: %d removed, %d added", post_id, removed, added)

    def _assemble_post(self, conn: sqlite3.Connection, post_id: int) -> Optional[Dict[str, Any]]:
        row = conn.execute(
            "SELECT id, author_id, title, content, active FROM posts WHERE id = ?",
            (post_id,),
        ).fetchone()
        if not row:
            return None
        tag_rows = conn.execute(
            """
            SELECT t.id, t.name
            FROM tags AS t
            JOIN post_tags AS pt ON t.id = pt.tag_id
            WHERE pt.post_id = ?
            ORDER BY t.id
            """,
            (post_id,),
        ).fetchall()
        author_row = conn.execute(
            "SELECT id, username, name, location FROM users WHERE id = ?",
            (row["author_id"],),
        ).fetchone()
        if not author_row:
            raise DataStoreError(f"post {post_id} references missing user {row['author_id']}")
        return {
            "id": row["id"],
            "title": row["title"],
            "content": row["content"],
            "active": bool(row["active"]),
            "author": {
                "id": author_row["id"],
                "username": author_row["username"],
                "name": author_row["name"],
                "location": author_row["location"],
            },
            "tags": [self._tag_row_to_dict(tag_row) for tag_row in tag_rows],
        }

    def _assemble_in_worker(self, post_id: int) -> Optional[Dict[str, Any]]:
        return self._assemble_post(self._conn(), post_id)

    def _assemble_many(self, post_ids: Sequence[int]) -> List[Dict[str, Any]]:
        if not post_ids:
            return []
        futures = [self._executor.submit(self._assemble_in_worker, post_id) for post_id in post_ids]
        # results are collected in submission order no matter which worker finishes first;
        # the timeout bounds each post, not the whole listing
        assembled = []
        try:
            for post_id, future in zip(post_ids, futures):
                try:
                    assembled.append(future.result(timeout=self.timeout))
                except FutureTimeoutError as exc:
                    raise InfrastructureError(
                        f"assembling post {post_id} took longer than {self.timeout}s"
                    ) from exc
        except BaseException:
            for future in futures:
                future.cancel()
            raise
        logger.debug("Assembled %d posts", len(post_ids))
        return [post for post in assembled if post is not None]

    def _require_post(self, post_id: int) -> Dict[str, Any]:
        post = self._assemble_post(self._conn(), post_id)
        if post is None:
            raise PostNotFound(f"post {post_id} does not exist")
        return post

    @staticmethod
    def _user_exists(conn: sqlite3.Connection, user_id: int) -> bool:
        return conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is not None

    @staticmethod
    def _user_from_row(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            username=row["username"],
            password_hash=row["password_hash"],
            name=row["name"],
            location=row["location"],
            active=bool(row["active"]),
        )

    @staticmethod
    def _user_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "username": row["username"],
            "name": row["name"],
            "location": row["location"],
            "active": bool(row["active"]),
        }

    @staticmethod
    def _tag_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        return {"id": row["id"], "name": row["name"]}

    @staticmethod
    def _normalize_tag_names(names: Optional[Iterable[str]]) -> List[str]:
        if not names:
            return []
        if isinstance(names, str):
            names = [names]
        normalized = {
            name.strip()
            for name in names
            if isinstance(name, str) and name.strip()
        }
        return sorted(normalized)
