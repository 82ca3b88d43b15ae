"""SQLite-backed catalog of videos, folders and tags.

The store owns a single SQLAlchemy engine bound to one shared SQLite
connection (`StaticPool`). Every call takes a re-entrant lock for the span of
one statement or one transaction, so writes are serialized and no reader sees
a half-applied multi-statement mutation. The database runs in WAL mode with
foreign keys enforced.

Constraint violations (duplicate file path, duplicate tag name, dangling
folder or tag id) are not pre-validated: they surface as `CatalogError`.
"""

import logging
import re
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from sqlalchemy import create_engine, delete, event, func, insert, literal_column, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import column, table

from clipshelf.domain.errors import (
    CatalogError,
    FolderNotFoundError,
    RootFolderError,
    TagNotFoundError,
    ValidationError,
    VideoNotFoundError,
)
from clipshelf.domain.models import (
    DEFAULT_TAG_COLOR,
    ROOT_FOLDER_ID,
    Folder,
    FolderNode,
    SearchQuery,
    SortKey,
    SortOrder,
    SourceKind,
    Tag,
    Video,
)
from clipshelf.infrastructure.catalog_schema import FTS_TABLE, REBUILD_FTS, folders, metadata, tags, video_tags, videos

logger = logging.getLogger(__name__)

ROOT_FOLDER_NAME = "All Videos"

# Logical field name -> column. The only fields update_video() may change.
UPDATABLE_VIDEO_FIELDS = {
    "title": videos.c.title,
    "description": videos.c.description,
    "folder_id": videos.c.folder_id,
    "is_favorite": videos.c.is_favorite,
    "thumbnail_path": videos.c.thumbnail_path,
}

SORT_COLUMNS = {
    SortKey.CREATED_AT: videos.c.created_at,
    SortKey.TITLE: videos.c.title.collate("NOCASE"),
    SortKey.DURATION: videos.c.duration,
    SortKey.PLAY_COUNT: videos.c.play_count,
}

_fts = table(FTS_TABLE, column("rowid"))
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def _utcnow() -> datetime:
    # Stored naive, UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _db_value(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, SourceKind):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def build_fts_query(text: str) -> Optional[str]:
    """Turns free text into an FTS5 expression: every word as a quoted prefix term, all required."""
    tokens = _TOKEN_RE.findall(text or "")
    if not tokens:
        return None
    return " AND ".join(f'"{token}"*' for token in tokens)


class CatalogStore:
    """Durable relational catalog plus its full-text index."""

    def __init__(self, database_path: Union[str, Path], enable_wal: bool = True):
        self.database_path = Path(database_path)
        self.enable_wal = enable_wal
        self._engine: Optional[Engine] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "CatalogStore":
        if self._engine is not None:
            return self
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            f"sqlite:///{self.database_path}",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        event.listen(engine, "connect", self._on_connect)
        self._engine = engine

        with self._write() as conn:
            metadata.create_all(conn)
            conn.execute(
                sqlite_insert(folders)
                .values(id=ROOT_FOLDER_ID, name=ROOT_FOLDER_NAME, parent_id=None, sort_order=0, created_at=_utcnow())
                .on_conflict_do_nothing(index_elements=["id"])
            )
        logger.info(f"CATALOG_OPEN: {self.database_path} (wal={self.enable_wal})")
        return self

    def close(self):
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None
                logger.info(f"CATALOG_CLOSE: {self.database_path}")

    def __enter__(self) -> "CatalogStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def _on_connect(self, dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if self.enable_wal:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise CatalogError("Catalog is not open")
        return self._engine

    @contextmanager
    def _read(self) -> Iterator[Connection]:
        with self._lock, self.engine.connect() as conn:
            yield conn

    @contextmanager
    def _write(self) -> Iterator[Connection]:
        """One transaction; committed on exit, rolled back on any exception."""
        with self._lock:
            try:
                with self.engine.begin() as conn:
                    yield conn
            except IntegrityError as e:
                raise CatalogError(f"Constraint violation: {e.orig}") from e
            except OperationalError as e:
                raise CatalogError(f"Database error: {e.orig}") from e

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------

    @staticmethod
    def _to_video(row) -> Video:
        return Video.model_validate(dict(row._mapping))

    def _fetch_video(self, conn: Connection, video_id: int) -> Optional[Video]:
        row = conn.execute(select(videos).where(videos.c.id == video_id)).first()
        return self._to_video(row) if row else None

    def _require_video(self, conn: Connection, video_id: int) -> Video:
        video = self._fetch_video(conn, video_id)
        if video is None:
            raise VideoNotFoundError(video_id)
        return video

    def get_video(self, video_id: int) -> Optional[Video]:
        with self._read() as conn:
            return self._fetch_video(conn, video_id)

    def list_videos(self, folder_id: Optional[int] = None) -> List[Video]:
        """All videos (or those directly in one folder), newest first."""
        stmt = select(videos)
        if folder_id is not None:
            stmt = stmt.where(videos.c.folder_id == folder_id)
        stmt = stmt.order_by(videos.c.created_at.desc(), videos.c.id.desc())
        with self._read() as conn:
            return [self._to_video(row) for row in conn.execute(stmt)]

    def search_videos(self, query: Optional[SearchQuery] = None) -> List[Video]:
        query = query or SearchQuery()
        stmt = select(videos)

        fts_query = build_fts_query(query.text) if query.text else None
        if fts_query:
            matches = select(_fts.c.rowid).where(literal_column(FTS_TABLE).op("MATCH")(fts_query))
            stmt = stmt.where(videos.c.id.in_(matches))

        if query.tag_ids:
            wanted = sorted(set(query.tag_ids))
            carrying_all = (
                select(video_tags.c.video_id)
                .where(video_tags.c.tag_id.in_(wanted))
                .group_by(video_tags.c.video_id)
                .having(func.count(func.distinct(video_tags.c.tag_id)) == len(wanted))
            )
            stmt = stmt.where(videos.c.id.in_(carrying_all))

        if query.folder_id is not None:
            stmt = stmt.where(videos.c.folder_id == query.folder_id)

        if query.source_kind is not None:
            stmt = stmt.where(videos.c.source_kind == query.source_kind.value)

        sort_column = SORT_COLUMNS[query.sort_by]
        if query.sort_order == SortOrder.ASC:
            stmt = stmt.order_by(sort_column.asc(), videos.c.id.asc())
        else:
            stmt = stmt.order_by(sort_column.desc(), videos.c.id.desc())

        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        if query.offset:
            stmt = stmt.offset(query.offset)

        with self._read() as conn:
            return [self._to_video(row) for row in conn.execute(stmt)]

    def insert_video(
        self,
        *,
        title: str,
        file_path: Union[str, Path],
        source_kind: SourceKind,
        description: Optional[str] = None,
        thumbnail_path: Optional[Union[str, Path]] = None,
        duration: float = 0.0,
        width: Optional[int] = None,
        height: Optional[int] = None,
        file_size: Optional[int] = None,
        codec: Optional[str] = None,
        source_url: Optional[str] = None,
        source_path: Optional[Union[str, Path]] = None,
        clip_start: Optional[float] = None,
        clip_end: Optional[float] = None,
        folder_id: Optional[int] = None,
    ) -> Video:
        now = _utcnow()
        values = {
            "title": title,
            "description": description,
            "file_path": file_path,
            "thumbnail_path": thumbnail_path,
            "duration": max(0.0, float(duration or 0.0)),
            "width": width,
            "height": height,
            "file_size": file_size,
            "codec": codec,
            "source_kind": SourceKind(source_kind),
            "source_url": source_url,
            "source_path": source_path,
            "clip_start": clip_start,
            "clip_end": clip_end,
            "folder_id": ROOT_FOLDER_ID if folder_id is None else folder_id,
            "created_at": now,
            "updated_at": now,
        }
        with self._write() as conn:
            result = conn.execute(insert(videos).values({k: _db_value(v) for k, v in values.items()}))
            video = self._require_video(conn, result.inserted_primary_key[0])
        logger.info(f"VIDEO_INSERT: id={video.id} title={video.title!r} folder={video.folder_id}")
        return video

    def update_video(self, video_id: int, **changes: Any) -> Video:
        """Applies the safelisted fields of `changes`; any other key is ignored."""
        values = {
            UPDATABLE_VIDEO_FIELDS[field].name: _db_value(value)
            for field, value in changes.items()
            if field in UPDATABLE_VIDEO_FIELDS
        }
        with self._write() as conn:
            if values:
                values["updated_at"] = _utcnow()
                result = conn.execute(update(videos).where(videos.c.id == video_id).values(values))
                if result.rowcount == 0:
                    raise VideoNotFoundError(video_id)
            return self._require_video(conn, video_id)

    def delete_video(self, video_id: int) -> Video:
        """Removes the row (and its tag links); returns it so callers can reclaim files."""
        with self._write() as conn:
            video = self._require_video(conn, video_id)
            conn.execute(delete(videos).where(videos.c.id == video_id))
        logger.info(f"VIDEO_DELETE: id={video_id} file={video.file_path}")
        return video

    def increment_play_count(self, video_id: int) -> Video:
        with self._write() as conn:
            video = self._require_video(conn, video_id)
            now = _utcnow()
            if video.last_played_at is not None and video.last_played_at > now:
                now = video.last_played_at
            conn.execute(
                update(videos)
                .where(videos.c.id == video_id)
                .values(play_count=videos.c.play_count + 1, last_played_at=now, updated_at=now)
            )
            return self._require_video(conn, video_id)

    def with_tags(self, video: Video) -> Video:
        return video.model_copy(update={"tags": self.tags_for_video(video.id)})

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    @staticmethod
    def _to_folder(row) -> Folder:
        return Folder.model_validate(dict(row._mapping))

    def _require_folder(self, conn: Connection, folder_id: int) -> Folder:
        row = conn.execute(select(folders).where(folders.c.id == folder_id)).first()
        if row is None:
            raise FolderNotFoundError(folder_id)
        return self._to_folder(row)

    def _subtree_ids(self, conn: Connection, folder_id: int) -> List[int]:
        subtree = select(folders.c.id).where(folders.c.id == folder_id).cte("subtree", recursive=True)
        subtree = subtree.union_all(select(folders.c.id).where(folders.c.parent_id == subtree.c.id))
        return [row[0] for row in conn.execute(select(subtree.c.id))]

    def get_folder(self, folder_id: int) -> Optional[Folder]:
        with self._read() as conn:
            row = conn.execute(select(folders).where(folders.c.id == folder_id)).first()
            return self._to_folder(row) if row else None

    def list_folders(self) -> List[Folder]:
        stmt = select(folders).order_by(folders.c.sort_order, folders.c.name)
        with self._read() as conn:
            return [self._to_folder(row) for row in conn.execute(stmt)]

    def folder_tree(self) -> List[FolderNode]:
        """Folders as a forest with per-folder (direct) video counts."""
        counts_stmt = select(videos.c.folder_id, func.count()).group_by(videos.c.folder_id)
        with self._read() as conn:
            counts = {folder_id: count for folder_id, count in conn.execute(counts_stmt)}
        nodes = [
            FolderNode(**folder.model_dump(), video_count=counts.get(folder.id, 0))
            for folder in self.list_folders()
        ]
        by_id: Dict[int, FolderNode] = {node.id: node for node in nodes}

        roots: List[FolderNode] = []
        for node in nodes:
            parent = by_id.get(node.parent_id) if node.parent_id is not None else None
            if parent is None:
                roots.append(node)
            else:
                parent.children.append(node)
        return roots

    def create_folder(self, name: str, parent_id: Optional[int] = None) -> Folder:
        if not name or not name.strip():
            raise ValidationError("Folder name cannot be empty")
        with self._write() as conn:
            if parent_id is not None:
                self._require_folder(conn, parent_id)
            siblings = folders.c.parent_id.is_(None) if parent_id is None else folders.c.parent_id == parent_id
            last = conn.execute(select(func.max(folders.c.sort_order)).where(siblings)).scalar()
            result = conn.execute(
                insert(folders).values(
                    name=name.strip(),
                    parent_id=parent_id,
                    sort_order=(last + 1) if last is not None else 0,
                    created_at=_utcnow(),
                )
            )
            folder = self._require_folder(conn, result.inserted_primary_key[0])
        logger.info(f"FOLDER_CREATE: id={folder.id} name={folder.name!r} parent={parent_id}")
        return folder

    def rename_folder(self, folder_id: int, name: str) -> Folder:
        if not name or not name.strip():
            raise ValidationError("Folder name cannot be empty")
        with self._write() as conn:
            self._require_folder(conn, folder_id)
            conn.execute(update(folders).where(folders.c.id == folder_id).values(name=name.strip()))
            return self._require_folder(conn, folder_id)

    def delete_folder(self, folder_id: int) -> int:
        """Deletes a folder and its subfolders; their videos move to the root folder.

        Returns the number of videos moved.
        """
        if folder_id == ROOT_FOLDER_ID:
            raise RootFolderError("The root folder cannot be deleted")
        with self._write() as conn:
            self._require_folder(conn, folder_id)
            subtree = self._subtree_ids(conn, folder_id)
            moved = conn.execute(
                update(videos)
                .where(videos.c.folder_id.in_(subtree))
                .values(folder_id=ROOT_FOLDER_ID, updated_at=_utcnow())
            ).rowcount
            conn.execute(delete(folders).where(folders.c.id == folder_id))
        logger.info(f"FOLDER_DELETE: id={folder_id} subfolders={len(subtree) - 1} videos_moved={moved}")
        return moved

    def move_folder(self, folder_id: int, new_parent_id: Optional[int]) -> Folder:
        if folder_id == ROOT_FOLDER_ID:
            raise RootFolderError("The root folder cannot be moved")
        with self._write() as conn:
            self._require_folder(conn, folder_id)
            if new_parent_id is not None:
                self._require_folder(conn, new_parent_id)
                if new_parent_id in self._subtree_ids(conn, folder_id):
                    raise ValidationError(f"Cannot move folder {folder_id} into itself or one of its subfolders")
            conn.execute(update(folders).where(folders.c.id == folder_id).values(parent_id=new_parent_id))
            return self._require_folder(conn, folder_id)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    @staticmethod
    def _to_tag(row) -> Tag:
        return Tag.model_validate(dict(row._mapping))

    def _require_tag(self, conn: Connection, tag_id: int) -> Tag:
        row = conn.execute(select(tags).where(tags.c.id == tag_id)).first()
        if row is None:
            raise TagNotFoundError(tag_id)
        return self._to_tag(row)

    def list_tags(self) -> List[Tag]:
        """All tags by name, each with the number of videos carrying it."""
        stmt = (
            select(tags, func.count(video_tags.c.video_id).label("video_count"))
            .select_from(tags.outerjoin(video_tags, tags.c.id == video_tags.c.tag_id))
            .group_by(tags.c.id)
            .order_by(tags.c.name)
        )
        with self._read() as conn:
            return [self._to_tag(row) for row in conn.execute(stmt)]

    def create_tag(self, name: str, color: Optional[str] = None) -> Tag:
        if not name or not name.strip():
            raise ValidationError("Tag name cannot be empty")
        with self._write() as conn:
            result = conn.execute(
                insert(tags).values(name=name.strip(), color=color or DEFAULT_TAG_COLOR, created_at=_utcnow())
            )
            return self._require_tag(conn, result.inserted_primary_key[0])

    def update_tag(self, tag_id: int, name: Optional[str] = None, color: Optional[str] = None) -> Tag:
        values = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("Tag name cannot be empty")
            values["name"] = name.strip()
        if color:
            values["color"] = color
        with self._write() as conn:
            self._require_tag(conn, tag_id)
            if values:
                conn.execute(update(tags).where(tags.c.id == tag_id).values(values))
            return self._require_tag(conn, tag_id)

    def delete_tag(self, tag_id: int):
        with self._write() as conn:
            self._require_tag(conn, tag_id)
            conn.execute(delete(tags).where(tags.c.id == tag_id))
        logger.info(f"TAG_DELETE: id={tag_id}")

    def add_tag(self, video_id: int, tag_id: int):
        """Links a tag to a video; linking twice is a no-op."""
        with self._write() as conn:
            conn.execute(
                sqlite_insert(video_tags)
                .values(video_id=video_id, tag_id=tag_id, created_at=_utcnow())
                .on_conflict_do_nothing(index_elements=["video_id", "tag_id"])
            )

    def remove_tag(self, video_id: int, tag_id: int) -> bool:
        with self._write() as conn:
            result = conn.execute(
                delete(video_tags).where(video_tags.c.video_id == video_id, video_tags.c.tag_id == tag_id)
            )
            return result.rowcount > 0

    def tags_for_video(self, video_id: int) -> List[Tag]:
        stmt = (
            select(tags)
            .join(video_tags, tags.c.id == video_tags.c.tag_id)
            .where(video_tags.c.video_id == video_id)
            .order_by(tags.c.name)
        )
        with self._read() as conn:
            return [self._to_tag(row) for row in conn.execute(stmt)]

    def set_tags_for_video(self, video_id: int, tag_ids: Iterable[int]) -> List[Tag]:
        """Replaces the whole tag set of a video in one transaction."""
        wanted = list(dict.fromkeys(tag_ids))
        with self._write() as conn:
            self._require_video(conn, video_id)
            conn.execute(delete(video_tags).where(video_tags.c.video_id == video_id))
            if wanted:
                now = _utcnow()
                conn.execute(
                    insert(video_tags),
                    [{"video_id": video_id, "tag_id": tag_id, "created_at": now} for tag_id in wanted],
                )
        return self.tags_for_video(video_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def rebuild_search_index(self):
        """Repopulates the full-text index from the videos table."""
        with self._write() as conn:
            conn.execute(REBUILD_FTS)
        logger.info("FTS_REBUILD: done")
