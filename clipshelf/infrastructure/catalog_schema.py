"""Relational schema of the catalog (SQLite).

Tables: folders (self-referencing tree), videos, tags and the video_tags
junction, plus `videos_fts`, an FTS5 external-content index over
videos.title/description that triggers keep in sync on every insert, update
and delete.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    DDL,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    event,
    text,
)
from clipshelf.domain.models import DEFAULT_TAG_COLOR, ROOT_FOLDER_ID

metadata = MetaData()

folders = Table(
    "folders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String, nullable=False),
    Column("parent_id", Integer, ForeignKey("folders.id", ondelete="CASCADE")),
    Column("sort_order", Integer, nullable=False, server_default=text("0")),
    Column("created_at", DateTime, nullable=False),
    Index("idx_folders_parent", "parent_id"),
)

videos = Table(
    "videos",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", String, nullable=False),
    Column("description", Text),
    Column("file_path", String, nullable=False, unique=True),
    Column("thumbnail_path", String),
    Column("duration", Float, nullable=False, server_default=text("0")),
    Column("width", Integer),
    Column("height", Integer),
    Column("file_size", Integer),
    Column("codec", String),
    Column("source_kind", String, nullable=False),
    Column("source_url", String),
    Column("source_path", String),
    Column("clip_start", Float),
    Column("clip_end", Float),
    # SET DEFAULT moves videos to the root folder if their folder row disappears
    Column(
        "folder_id",
        Integer,
        ForeignKey("folders.id", ondelete="SET DEFAULT"),
        nullable=False,
        server_default=text(str(ROOT_FOLDER_ID)),
    ),
    Column("is_favorite", Integer, nullable=False, server_default=text("0")),
    Column("play_count", Integer, nullable=False, server_default=text("0")),
    Column("last_played_at", DateTime),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    CheckConstraint("source_kind IN ('local', 'remote')", name="ck_videos_source_kind"),
    CheckConstraint("duration >= 0", name="ck_videos_duration"),
    CheckConstraint("play_count >= 0", name="ck_videos_play_count"),
    Index("idx_videos_folder", "folder_id"),
    Index("idx_videos_source_kind", "source_kind"),
    Index("idx_videos_created", "created_at"),
)

tags = Table(
    "tags",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String, nullable=False, unique=True),
    Column("color", String, nullable=False, server_default=text(f"'{DEFAULT_TAG_COLOR}'")),
    Column("created_at", DateTime, nullable=False),
)

video_tags = Table(
    "video_tags",
    metadata,
    Column("video_id", Integer, ForeignKey("videos.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", DateTime, nullable=False),
    Index("idx_video_tags_tag", "tag_id"),
)

FTS_TABLE = "videos_fts"

FTS_DDL = [
    f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} USING fts5(
        title,
        description,
        content='videos',
        content_rowid='id'
    )
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS videos_ai AFTER INSERT ON videos BEGIN
        INSERT INTO {FTS_TABLE}(rowid, title, description)
        VALUES (new.id, new.title, new.description);
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS videos_ad AFTER DELETE ON videos BEGIN
        INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, title, description)
        VALUES ('delete', old.id, old.title, old.description);
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS videos_au AFTER UPDATE OF title, description ON videos BEGIN
        INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, title, description)
        VALUES ('delete', old.id, old.title, old.description);
        INSERT INTO {FTS_TABLE}(rowid, title, description)
        VALUES (new.id, new.title, new.description);
    END
    """,
]

for _statement in FTS_DDL:
    event.listen(videos, "after_create", DDL(_statement))

REBUILD_FTS = text(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES ('rebuild')")
