#!/usr/bin/env python3
"""
Rebuild a demo Juicebox database.

Creates the sample users and a handful of tagged posts, applies a couple of
edits so the tag resync path is exercised, then prints what the API would
list. Run with ``--reset`` to start from an empty database file.
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Sequence

from juicebox.datastore import DB_FILENAME, DataStore, PostPatch


logger = logging.getLogger("juicebox.seed")

INITIAL_USERS = [
    {"username": "albert", "password": "bertie99", "name": "Al Bert", "location": "Sidney, Australia"},
    {"username": "sandra", "password": "2sandy4me", "name": "Just Sandra", "location": "Ain't tellin'"},
    {"username": "glamgal", "password": "soglam", "name": "Joshua", "location": "Upper East Side"},
]


def create_initial_users(datastore: DataStore) -> Dict[str, int]:
    user_ids: Dict[str, int] = {}
    for record in INITIAL_USERS:
        user = datastore.create_user(**record)
        if user is None:
            existing = datastore.get_user_by_username(record["username"])
            if existing is None:
                raise RuntimeError(f"could not create or find user {record['username']}")
            user_ids[record["username"]] = existing["id"]
            logger.info("User %s already exists", record["username"])
        else:
            user_ids[record["username"]] = user.id
            logger.info("Created user %s", user.username)
    return user_ids


def create_initial_posts(datastore: DataStore, user_ids: Dict[str, int]) -> None:
    first = datastore.create_post(
        author_id=user_ids["albert"],
        title="First Post",
        content="This is my first post. I hope I love writing blogs as much as I love writing them.",
        tags=["#happy", "#youcandoanything"],
    )
    datastore.create_post(
        author_id=user_ids["sandra"],
        title="How does this work?",
        content="Seriously, does this even do anything?",
        tags=["#happy", "#worst-day-ever"],
    )
    datastore.create_post(
        author_id=user_ids["glamgal"],
        title="Living the Glam Life",
        content="Do you even? I swear that half of you are posing.",
        tags=["#happy", "#youcandoanything", "#canmandoeverything"],
    )
    logger.info("Created initial posts")

    datastore.update_post(
        first["id"],
        PostPatch(title="New Title", content="Updated Content", tags=["#youcandoanything", "#redfish", "#bluefish"]),
    )
    logger.info("Updated post %s", first["id"])


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed a Juicebox database with demo data")
    parser.add_argument("--data-dir", default="data", help="directory holding the SQLite database (default: data)")
    parser.add_argument("--reset", action="store_true", help="delete the existing database before seeding")
    parser.add_argument("--verbose", action="store_true", help="log debug output from the data layer")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    data_dir = Path(args.data_dir)
    if args.reset:
        for suffix in ("", "-wal", "-shm"):
            target = data_dir / f"{DB_FILENAME}{suffix}"
            if target.exists():
                target.unlink()
                logger.info("Removed %s", target)

    datastore = DataStore.from_path(data_dir)
    try:
        user_ids = create_initial_users(datastore)
        create_initial_posts(datastore, user_ids)
        print(json.dumps({"posts": datastore.list_posts()}, indent=2, ensure_ascii=False))
        print(json.dumps({"posts": datastore.list_posts_by_tag("#happy")}, indent=2, ensure_ascii=False))
    finally:
        datastore.close()


if __name__ == "__main__":
    main()
