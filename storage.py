import datetime
import json
import logging
import pathlib
import random
import sqlite3
import uuid
from contextlib import contextmanager

import bcrypt

import opinions


logger = logging.getLogger(__name__)

DATA_PATH = pathlib.Path("data")
DB_PATH = DATA_PATH / "app.db"

INVITE_CODE_CHARS = "ABCDEFGHIJKLMNPQRSTUVWXYZ123456789"
INVITE_CODE_LENGTH = 6

MIN_RATING = 1
MAX_RATING = 5


class NotFoundError(LookupError):
    pass


class GroupError(ValueError):
    pass


def init_db(db_path=None):
    path = _resolve_db_path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with _get_conn(path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE NOT NULL,
                display_name TEXT NOT NULL,
                password_hash TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS groups (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                color TEXT NOT NULL,
                created_by TEXT NOT NULL,
                created_at TEXT NOT NULL,
                invite_code TEXT UNIQUE NOT NULL,
                last_activity TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS group_members (
                group_id TEXT NOT NULL,
                member_id TEXT NOT NULL,
                joined_at TEXT NOT NULL,
                PRIMARY KEY (group_id, member_id),
                FOREIGN KEY(group_id) REFERENCES groups(id) ON DELETE CASCADE
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS movies (
                id TEXT PRIMARY KEY,
                group_id TEXT NOT NULL,
                tmdb_id INTEGER,
                title TEXT NOT NULL,
                year TEXT,
                overview TEXT,
                poster_path TEXT,
                backdrop_path TEXT,
                genres_json TEXT NOT NULL DEFAULT '[]',
                rating REAL,
                added_by TEXT NOT NULL,
                added_by_name TEXT,
                added_at TEXT NOT NULL,
                opinions_json TEXT NOT NULL DEFAULT '{}',
                opinion_counts_json TEXT NOT NULL DEFAULT '{}',
                watched INTEGER NOT NULL DEFAULT 0,
                watched_at TEXT,
                watched_by TEXT,
                group_ratings_json TEXT NOT NULL DEFAULT '{}',
                FOREIGN KEY(group_id) REFERENCES groups(id) ON DELETE CASCADE
            )
            """
        )


def create_user(email, password, display_name=None, db_path=None):
    if not email or not password:
        return None
    email = email.strip().lower()
    display_name = (display_name or "").strip() or email.split("@")[0]
    password_hash = _hash_password(password)
    created_at = _now()
    path = _resolve_db_path(db_path)
    with _get_conn(path) as conn:
        try:
            cursor = conn.execute(
                """
                INSERT INTO users (email, display_name, password_hash, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (email, display_name, password_hash, created_at),
            )
        except sqlite3.IntegrityError:
            return None
        return {
            "id": cursor.lastrowid,
            "email": email,
            "display_name": display_name,
            "created_at": created_at,
        }


def authenticate_user(email, password, db_path=None):
    if not email or not password:
        return None
    path = _resolve_db_path(db_path)
    with _get_conn(path) as conn:
        row = conn.execute(
            """
            SELECT id, email, display_name, password_hash, created_at
            FROM users WHERE email = ?
            """,
            (email.strip().lower(),),
        ).fetchone()
    if not row:
        return None
    if not _verify_password(password, row["password_hash"]):
        return None
    return _row_to_user(row)


def get_user(user_id, db_path=None):
    path = _resolve_db_path(db_path)
    with _get_conn(path) as conn:
        row = conn.execute(
            "SELECT id, email, display_name, created_at FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
    return _row_to_user(row) if row else None


def get_display_names(member_ids, db_path=None):
    user_ids = [int(member_id) for member_id in member_ids if str(member_id).isdigit()]
    if not user_ids:
        return {}
    placeholders = ",".join("?" for _ in user_ids)
    path = _resolve_db_path(db_path)
    with _get_conn(path) as conn:
        rows = conn.execute(
            f"SELECT id, display_name FROM users WHERE id IN ({placeholders})",
            user_ids,
        ).fetchall()
    return {str(row["id"]): row["display_name"] for row in rows}


def create_group(name, color, user_id, db_path=None):
    name = (name or "").strip()
    if not name:
        raise GroupError("Give your group a name first.")
    group_id = uuid.uuid4().hex
    member_id = str(user_id)
    now = _now()
    path = _resolve_db_path(db_path)
    with _transaction(path) as conn:
        invite_code = _generate_invite_code(conn)
        conn.execute(
            """
            INSERT INTO groups (id, name, color, created_by, created_at, invite_code, last_activity)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (group_id, name, color, member_id, now, invite_code, now),
        )
        conn.execute(
            "INSERT INTO group_members (group_id, member_id, joined_at) VALUES (?, ?, ?)",
            (group_id, member_id, now),
        )
        group = _fetch_group(conn, group_id)
    logger.info("Created group %s with invite code %s", group_id, invite_code)
    return group


def get_group(group_id, db_path=None):
    path = _resolve_db_path(db_path)
    with _get_conn(path) as conn:
        try:
            return _fetch_group(conn, group_id)
        except NotFoundError:
            return None


def get_group_by_invite_code(invite_code, db_path=None):
    if not invite_code:
        return None
    path = _resolve_db_path(db_path)
    with _get_conn(path) as conn:
        row = conn.execute(
            "SELECT id FROM groups WHERE invite_code = ?",
            (invite_code.strip().upper(),),
        ).fetchone()
        if not row:
            return None
        return _fetch_group(conn, row["id"])


def list_user_groups(user_id, db_path=None):
    path = _resolve_db_path(db_path)
    with _get_conn(path) as conn:
        rows = conn.execute(
            """
            SELECT g.id
            FROM groups g
            JOIN group_members m ON m.group_id = g.id
            WHERE m.member_id = ?
            ORDER BY g.last_activity DESC, g.rowid DESC
            """,
            (str(user_id),),
        ).fetchall()
        return [_fetch_group(conn, row["id"]) for row in rows]


def join_group(invite_code, user_id, db_path=None):
    code = (invite_code or "").strip().upper()
    member_id = str(user_id)
    path = _resolve_db_path(db_path)
    with _transaction(path) as conn:
        row = conn.execute("SELECT id FROM groups WHERE invite_code = ?", (code,)).fetchone()
        if not row:
            raise GroupError("Invalid invite code. Double-check and try again.")
        group = _fetch_group(conn, row["id"])
        if member_id in group["members"]:
            raise GroupError("You're already in this group!")
        conn.execute(
            "INSERT INTO group_members (group_id, member_id, joined_at) VALUES (?, ?, ?)",
            (group["id"], member_id, _now()),
        )
        group = _fetch_group(conn, group["id"])
    logger.info("Member %s joined group %s", member_id, group["id"])
    return group


def leave_group(group_id, user_id, db_path=None):
    member_id = str(user_id)
    path = _resolve_db_path(db_path)
    with _transaction(path) as conn:
        group = _fetch_group(conn, group_id)
        if member_id not in group["members"]:
            raise GroupError("You're not a member of this group.")
        remaining = [other for other in group["members"] if other != member_id]
        if not remaining:
            conn.execute("DELETE FROM groups WHERE id = ?", (group_id,))
            logger.info("Last member left, deleted group %s", group_id)
            return None
        conn.execute(
            "DELETE FROM group_members WHERE group_id = ? AND member_id = ?",
            (group_id, member_id),
        )
        if group["created_by"] == member_id:
            conn.execute(
                "UPDATE groups SET created_by = ? WHERE id = ?",
                (remaining[0], group_id),
            )
            logger.info("Ownership of group %s passed to %s", group_id, remaining[0])
        return _fetch_group(conn, group_id)


def delete_group(group_id, user_id, db_path=None):
    path = _resolve_db_path(db_path)
    with _transaction(path) as conn:
        group = _fetch_group(conn, group_id)
        if group["created_by"] != str(user_id):
            raise GroupError("You don't have permission to do that.")
        conn.execute("DELETE FROM groups WHERE id = ?", (group_id,))
    logger.info("Deleted group %s", group_id)


def add_movie(group_id, details, user_id, user_name, db_path=None):
    movie_id = uuid.uuid4().hex
    member_id = str(user_id)
    creator_opinions = {member_id: opinions.MUST_WATCH}
    now = _now()
    path = _resolve_db_path(db_path)
    with _transaction(path) as conn:
        _fetch_group(conn, group_id)
        conn.execute(
            """
            INSERT INTO movies (
                id, group_id, tmdb_id, title, year, overview, poster_path, backdrop_path,
                genres_json, rating, added_by, added_by_name, added_at,
                opinions_json, opinion_counts_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                movie_id,
                group_id,
                details.get("tmdb_id"),
                details["title"],
                details.get("year", ""),
                details.get("overview", ""),
                details.get("poster_path"),
                details.get("backdrop_path"),
                json.dumps(details.get("genres", [])),
                details.get("rating"),
                member_id,
                user_name,
                now,
                json.dumps(creator_opinions),
                json.dumps(opinions.calculate_opinion_counts(creator_opinions)),
            ),
        )
        _touch_group(conn, group_id, now)
        movie = _fetch_movie(conn, group_id, movie_id)
    logger.info("Added movie %s (%s) to group %s", movie_id, movie["title"], group_id)
    return movie


def remove_movie(group_id, movie_id, user_id, db_path=None):
    member_id = str(user_id)
    path = _resolve_db_path(db_path)
    with _transaction(path) as conn:
        group = _fetch_group(conn, group_id)
        movie = _fetch_movie(conn, group_id, movie_id)
        if member_id not in (movie["added_by"], group["created_by"]):
            raise GroupError("You can only remove movies you added.")
        conn.execute("DELETE FROM movies WHERE id = ?", (movie_id,))
        _touch_group(conn, group_id, _now())
    logger.info("Removed movie %s from group %s", movie_id, group_id)


def get_movie(group_id, movie_id, db_path=None):
    path = _resolve_db_path(db_path)
    with _get_conn(path) as conn:
        return _fetch_movie(conn, group_id, movie_id)


def get_group_movies(group_id, db_path=None):
    path = _resolve_db_path(db_path)
    with _get_conn(path) as conn:
        rows = conn.execute(
            "SELECT * FROM movies WHERE group_id = ? ORDER BY rowid",
            (group_id,),
        ).fetchall()
    return [_row_to_movie(row) for row in rows]


def get_unwatched_movies(group_id, db_path=None):
    path = _resolve_db_path(db_path)
    with _get_conn(path) as conn:
        rows = conn.execute(
            "SELECT * FROM movies WHERE group_id = ? AND watched = 0 ORDER BY rowid",
            (group_id,),
        ).fetchall()
    return [_row_to_movie(row) for row in rows]


def set_movie_opinion(group_id, movie_id, member_id, opinion, db_path=None):
    path = _resolve_db_path(db_path)
    with _transaction(path) as conn:
        movie = _fetch_movie(conn, group_id, movie_id)
        updated = opinions.set_opinion(movie, member_id, opinion)
        conn.execute(
            "UPDATE movies SET opinions_json = ?, opinion_counts_json = ? WHERE id = ?",
            (
                json.dumps(updated["opinions"]),
                json.dumps(updated["opinion_counts"]),
                movie_id,
            ),
        )
    logger.debug("Member %s set opinion %s on movie %s", member_id, opinion, movie_id)
    return updated


def mark_watched(group_id, movie_id, user_id, db_path=None):
    now = _now()
    path = _resolve_db_path(db_path)
    with _transaction(path) as conn:
        if _fetch_movie(conn, group_id, movie_id)["watched"]:
            raise GroupError("This movie is already in your watch history.")
        conn.execute(
            "UPDATE movies SET watched = 1, watched_at = ?, watched_by = ? WHERE id = ?",
            (now, str(user_id), movie_id),
        )
        _touch_group(conn, group_id, now)
        movie = _fetch_movie(conn, group_id, movie_id)
    logger.info("Group %s watched movie %s", group_id, movie_id)
    return movie


def unwatch_movie(group_id, movie_id, db_path=None):
    path = _resolve_db_path(db_path)
    with _transaction(path) as conn:
        _fetch_movie(conn, group_id, movie_id)
        conn.execute(
            """
            UPDATE movies
            SET watched = 0, watched_at = NULL, watched_by = NULL, group_ratings_json = '{}'
            WHERE id = ?
            """,
            (movie_id,),
        )
        movie = _fetch_movie(conn, group_id, movie_id)
    logger.info("Movie %s returned to the reel of group %s", movie_id, group_id)
    return movie


def get_watch_history(group_id, db_path=None):
    path = _resolve_db_path(db_path)
    with _get_conn(path) as conn:
        rows = conn.execute(
            """
            SELECT * FROM movies
            WHERE group_id = ? AND watched = 1
            ORDER BY watched_at DESC, rowid DESC
            """,
            (group_id,),
        ).fetchall()
    return [_row_to_movie(row) for row in rows]


def rate_watched_movie(group_id, movie_id, member_id, rating, db_path=None):
    if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        raise GroupError(f"Ratings go from {MIN_RATING} to {MAX_RATING} stars.")
    path = _resolve_db_path(db_path)
    with _transaction(path) as conn:
        movie = _fetch_movie(conn, group_id, movie_id)
        if not movie["watched"]:
            raise GroupError("Only movies the group has watched can be rated.")
        ratings = dict(movie["group_ratings"])
        ratings[str(member_id)] = rating
        conn.execute(
            "UPDATE movies SET group_ratings_json = ? WHERE id = ?",
            (json.dumps(ratings), movie_id),
        )
        return _fetch_movie(conn, group_id, movie_id)


def _fetch_group(conn, group_id):
    row = conn.execute("SELECT * FROM groups WHERE id = ?", (group_id,)).fetchone()
    if not row:
        raise NotFoundError("This group doesn't exist anymore.")
    members = conn.execute(
        "SELECT member_id FROM group_members WHERE group_id = ? ORDER BY joined_at, rowid",
        (group_id,),
    ).fetchall()
    movie_count = conn.execute(
        "SELECT COUNT(*) FROM movies WHERE group_id = ?", (group_id,)
    ).fetchone()[0]
    return {
        "id": row["id"],
        "name": row["name"],
        "color": row["color"],
        "created_by": row["created_by"],
        "created_at": row["created_at"],
        "invite_code": row["invite_code"],
        "last_activity": row["last_activity"],
        "members": [member["member_id"] for member in members],
        "movie_count": movie_count,
    }


def _fetch_movie(conn, group_id, movie_id):
    row = conn.execute(
        "SELECT * FROM movies WHERE id = ? AND group_id = ?",
        (movie_id, group_id),
    ).fetchone()
    if not row:
        raise NotFoundError("Movie not found.")
    return _row_to_movie(row)


def _touch_group(conn, group_id, now):
    conn.execute("UPDATE groups SET last_activity = ? WHERE id = ?", (now, group_id))


def _generate_invite_code(conn):
    while True:
        code = "".join(random.choice(INVITE_CODE_CHARS) for _ in range(INVITE_CODE_LENGTH))
        taken = conn.execute("SELECT 1 FROM groups WHERE invite_code = ?", (code,)).fetchone()
        if not taken:
            return code


def _row_to_user(row):
    return {
        "id": row["id"],
        "email": row["email"],
        "display_name": row["display_name"],
        "created_at": row["created_at"],
    }


def _row_to_movie(row):
    # opinion_counts_json is a persisted copy for other readers of the table;
    # loads re-tally counts from opinions_json
    return opinions.normalize_movie(
        {
            "id": row["id"],
            "group_id": row["group_id"],
            "tmdb_id": row["tmdb_id"],
            "title": row["title"],
            "year": row["year"] or "",
            "overview": row["overview"] or "",
            "poster_path": row["poster_path"],
            "backdrop_path": row["backdrop_path"],
            "genres": _loads(row["genres_json"], []),
            "rating": row["rating"],
            "added_by": row["added_by"],
            "added_by_name": row["added_by_name"],
            "added_at": row["added_at"],
            "opinions": _loads(row["opinions_json"], {}),
            "watched": row["watched"],
            "watched_at": row["watched_at"],
            "watched_by": row["watched_by"],
            "group_ratings": _loads(row["group_ratings_json"], {}),
        }
    )


def _loads(text, default):
    try:
        return json.loads(text) if text else default
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable JSON column: %r", text)
        return default


def _resolve_db_path(db_path):
    return pathlib.Path(db_path) if db_path else DB_PATH


def _connect(path):
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def _get_conn(path):
    conn = _connect(path)
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


@contextmanager
def _transaction(path):
    # BEGIN IMMEDIATE takes the write lock before the read, so concurrent
    # read-modify-write cycles serialize instead of losing updates.
    conn = _connect(path)
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except Exception:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def _hash_password(password):
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def _verify_password(password, password_hash):
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


def _now():
    return datetime.datetime.now(datetime.UTC).isoformat(timespec="microseconds")
