# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with docbackup Integration.

This example mounts the backup admin endpoints next to ordinary application
routes. Records live in an InMemoryRecordStore; a real deployment passes an
object implementing docbackup.store.RecordStore for its database instead.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    BACKUP_DIR: Backup root directory (default: ./backup)
    BACKUP_CRON_DAILY: Daily schedule (default: "0 2 * * *")
    DOCBACKUP_ADMIN_API_KEY: API key for admin endpoints
"""

import os
from datetime import datetime, UTC

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from docbackup.builder import (
    build_config,
    create_empty_config,
    exclude_collections,
    keep_runs,
    schedule_tier,
    use_compression,
    with_root_dir,
    with_worker_pool,
)
from docbackup.exceptions import DuplicateRecordError
from docbackup.integrations.fastapi import backup_lifespan
from docbackup.log_setup import setup_logging_from_config
from docbackup.records import Record
from docbackup.store import InMemoryRecordStore


# Build docbackup configuration
def create_backup_config():
    """
    Create docbackup configuration from environment variables.

    This uses the functional builder pattern for clean, composable configuration.
    """
    config = create_empty_config()

    config = with_root_dir(config, os.getenv("BACKUP_DIR", "./backup"))

    # Nightly at 02:00, keep two weeks of dailies
    config = schedule_tier(config, "daily", os.getenv("BACKUP_CRON_DAILY", "0 2 * * *"))
    config = keep_runs(config, "daily", 14)

    # Sessions are rebuilt on login, no need to keep them
    config = exclude_collections(config, ["sessions"])

    config = use_compression(config, "zstd", 10)
    config = with_worker_pool(config, 2)

    return build_config(config)


backup_config = create_backup_config()
setup_logging_from_config(backup_config)

store = InMemoryRecordStore()
store.add_collection("users")
store.add_collection("posts")
store.add_collection("sessions")

# Backup endpoints are registered when the app starts
app = FastAPI(
    title="My App with docbackup",
    description="Example application demonstrating scheduled backups",
    version="1.0.0",
    lifespan=lambda app: backup_lifespan(app, backup_config, store),
)


# ============================================================================
# Application Routes
# ============================================================================


class User(BaseModel):
    """Example user model."""

    id: str
    name: str
    email: str | None = None


class Post(BaseModel):
    """Example post model."""

    id: str
    title: str
    tags: list[str] = []


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Welcome to My App with docbackup",
        "docs": "/docs",
        "backup_health": "/health",
    }


@app.get("/users/{user_id}")
async def get_user(user_id: str) -> User:
    """Get a user by ID."""
    for record in store.records("users"):
        if record.id == user_id:
            return User(id=record.id, **record.data)
    raise HTTPException(status_code=404, detail="User not found")


@app.post("/users")
async def create_user(user: User) -> User:
    """Create a new user. It is picked up by the next backup run."""
    record = Record(id=user.id, updated_at=datetime.now(UTC), data=user.model_dump(exclude={"id"}))
    try:
        await store.write_record("users", record, overwrite=False)
    except DuplicateRecordError:
        raise HTTPException(status_code=409, detail="User already exists")
    return user


@app.post("/posts")
async def create_post(post: Post) -> Post:
    """Create or replace a post."""
    record = Record(id=post.id, updated_at=datetime.now(UTC), data=post.model_dump(exclude={"id"}))
    await store.write_record("posts", record, overwrite=True)
    return post


# ============================================================================
# docbackup Admin Endpoints (registered by backup_lifespan)
# ============================================================================
#
# POST   /backup                    - Run a backup now (manual tier unless "tier" is given)
# POST   /backups/{id}/restore      - Restore one collection or a whole run
# GET    /backups/history           - Recent runs, newest first
# GET    /backups/{id}              - RunLog of one run
# DELETE /backups/{id}              - Delete a run's files and log
# GET    /backup/schedule           - Per-tier schedule, last and next run
# GET    /health                    - Backup directory and store health
#
# All admin endpoints require: Authorization: Bearer <DOCBACKUP_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
