"""
Database models for miao.

Uses Peewee ORM with SQLite. Stores connectivity check results and the engine
start/stop history shown on the dashboard.
"""

import os
from datetime import datetime, timedelta
from pathlib import Path

from peewee import (
    AutoField,
    BooleanField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    FloatField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

from .config import config

database = DatabaseProxy()


def initialize_db(path: Path | str = None):
    """Initialize database connection and create tables."""
    path = str(path or config.db_path)
    if path != ":memory:":
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    db = SqliteDatabase(
        path,
        pragmas={
            "journal_mode": "wal",
            "cache_size": -64 * 1000,
            "busy_timeout": 5000,
        },
        check_same_thread=False,
    )
    database.initialize(db)
    database.create_tables([HealthCheck, EngineEvent], safe=True)


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class HealthCheck(BaseModel):
    """Result of one connectivity probe through the engine."""

    id = AutoField()
    success = BooleanField(default=False)
    url = CharField(null=True)
    status_code = IntegerField(null=True)
    latency_ms = FloatField(null=True)
    detail = TextField(null=True)
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "checks"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "success": self.success,
            "url": self.url,
            "status_code": self.status_code,
            "latency_ms": self.latency_ms,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class EngineEvent(BaseModel):
    """An engine lifecycle transition: start, stop, crash or failed start."""

    id = AutoField()
    action = CharField(index=True)
    pid = IntegerField(null=True)
    detail = TextField(null=True)
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "engine_events"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "pid": self.pid,
            "detail": self.detail,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class HealthLog:
    """Append-only history of one model: record(event) and last(n)."""

    def __init__(self, model: type[BaseModel]):
        self.model = model

    def record(self, **fields) -> BaseModel:
        return self.model.create(**fields)

    def last(self, n: int = 10) -> list[dict]:
        rows = self.model.select().order_by(self.model.id.desc()).limit(n)
        return [row.to_dict() for row in rows]

    def prune(self, days: int) -> int:
        """Delete entries older than `days`. Returns the number removed."""
        cutoff = datetime.now() - timedelta(days=days)
        return self.model.delete().where(self.model.timestamp < cutoff).execute()


checks = HealthLog(HealthCheck)
engine_events = HealthLog(EngineEvent)
