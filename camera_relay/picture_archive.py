"""
Picture Archive - Disk-backed, quota-bounded store of saved frames.

Image bytes live as files in one directory; metadata (camera, capture time,
detections, size) lives in a sqlite index next to it. Every mutation and every
listing runs under one lock, so the tracked total size always equals the sum
of the indexed picture sizes and never exceeds the quota once a call returns.
"""

import os
import re
import sqlite3
import threading
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import ArchiveFull, InvalidFrame, PictureNotFound, StorageIOError
from .models import Detection

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 24
MAX_PAGE_SIZE = 100
BYTES_PER_GB = 1024 ** 3
IMAGE_EXTENSION = ".jpg"

# 2024-01-01_12-30_05.123_balkon_person_car_.jpg (optionally 05.123-2 on collision)
FILENAME_TIME_FORMAT = "%Y-%m-%d_%H-%M_%S.%f"
_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9.\-]+')
_COLLISION_SUFFIX = re.compile(r'-\d+$')

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS pictures (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        filename TEXT NOT NULL UNIQUE,
        camera TEXT NOT NULL,
        captured_at TEXT NOT NULL,
        capture_date TEXT NOT NULL,
        capture_time TEXT NOT NULL,
        filesize INTEGER NOT NULL DEFAULT 0,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS detections (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        picture_id INTEGER NOT NULL,
        object_name TEXT NOT NULL,
        x INTEGER DEFAULT 0,
        y INTEGER DEFAULT 0,
        width INTEGER DEFAULT 0,
        height INTEGER DEFAULT 0,
        confidence REAL DEFAULT 0,
        FOREIGN KEY (picture_id) REFERENCES pictures(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_pictures_camera ON pictures(camera);
    CREATE INDEX IF NOT EXISTS idx_pictures_captured_at ON pictures(captured_at);
    CREATE INDEX IF NOT EXISTS idx_detections_object_name ON detections(object_name);
    CREATE INDEX IF NOT EXISTS idx_detections_picture_id ON detections(picture_id);
'''


@dataclass
class ArchiveConfig:
    """Configuration for the picture archive and the archiving policy."""
    directory: str = os.path.join("static", "images")
    database: str = os.path.join("data", "images.db")
    max_size_gb: float = 3.0
    policy: str = "detections"  # "detections", "all" or "none"
    max_pictures_per_window: int = 10
    window_seconds: float = 30.0
    queue_size: int = 100
    draw_overlays: bool = True

    @property
    def max_size_bytes(self) -> int:
        return int(self.max_size_gb * BYTES_PER_GB)


@dataclass
class PictureFilter:
    """Optional filters for listing; ``None`` means "not set". All set fields are ANDed."""
    camera: Optional[str] = None
    object: Optional[str] = None
    date_after: Optional[date] = None
    date_before: Optional[date] = None
    time_after: Optional[dt_time] = None
    time_before: Optional[dt_time] = None


@dataclass
class Picture:
    """Metadata of one archived picture."""
    filename: str
    camera: str
    captured_at: datetime
    objects: List[str] = field(default_factory=list)
    size: int = 0

    @property
    def date(self) -> date:
        return self.captured_at.date()

    @property
    def time_of_day(self) -> dt_time:
        return self.captured_at.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.filename,
            'date': self.captured_at.strftime('%d-%m-%Y'),
            'timeOfDay': self.captured_at.strftime('%H:%M'),
            'camera': self.camera,
            'objects': list(self.objects),
            'size': self.size,
        }


@dataclass
class PicturePage:
    """One page of a filtered listing plus archive usage at the same instant."""
    items: List[Picture]
    current_page: int
    total_pages: int
    total_count: int
    page_size: int
    current_size: int
    max_size: int


def format_filename(camera_id: str, captured_at: datetime, labels: Sequence[str]) -> str:
    """Build a filename in the legacy format: timestamp, camera, then labels."""
    stamp = captured_at.strftime("%Y-%m-%d_%H-%M_%S.") + f"{captured_at.microsecond // 1000:03d}"
    objects = "".join(f"{_safe_part(label)}_" for label in labels)
    return f"{stamp}_{_safe_part(camera_id)}_{objects}{IMAGE_EXTENSION}"


def parse_filename(filename: str) -> Tuple[datetime, str, List[str]]:
    """
    Extract capture time, camera and labels from a legacy filename.

    Raises:
        ValueError: if the name does not follow the format
    """
    name = filename[:-len(IMAGE_EXTENSION)] if filename.endswith(IMAGE_EXTENSION) else filename
    parts = name.split("_")
    if len(parts) < 4:
        raise ValueError(f"invalid filename format: {filename}")

    seconds = _COLLISION_SUFFIX.sub("", parts[2])
    captured_at = datetime.strptime(f"{parts[0]}_{parts[1]}_{seconds}", FILENAME_TIME_FORMAT)
    camera = parts[3]
    if not camera:
        raise ValueError(f"missing camera in filename: {filename}")
    objects = [p for p in parts[4:] if p]
    return captured_at, camera, objects


def _safe_part(value: str) -> str:
    return _UNSAFE_CHARS.sub("-", value.strip()) or "unknown"


def _unique_labels(labels: Sequence[str]) -> List[str]:
    seen = []
    for label in labels:
        if label not in seen:
            seen.append(label)
    return seen


class PictureArchive:
    """
    Quota-bounded picture storage.

    When a new picture does not fit, the oldest pictures are evicted until it
    does. The evicted rows go in the same transaction that indexes the new
    picture. Only a picture larger than the whole quota is refused.
    """

    def __init__(self, directory: str, database: str, max_size: int, reindex: bool = True):
        self.directory = os.path.abspath(directory)
        self.database = database
        self.max_size = int(max_size)
        self.lock = threading.RLock()

        os.makedirs(self.directory, exist_ok=True)
        db_dir = os.path.dirname(database)
        if database != ":memory:" and db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self.conn = sqlite3.connect(database, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(SCHEMA)
        self.conn.commit()

        # Statistics
        self.total_saved = 0
        self.total_evicted = 0

        with self.lock:
            if reindex:
                self.reindex()
            self.current_size = self._indexed_size()
            self._enforce_quota(0)

        logger.info(f"PictureArchive opened at {self.directory}: {self.current_size / BYTES_PER_GB:.3f}GB "
                    f"of {self.max_size / BYTES_PER_GB:.2f}GB used")

    @property
    def max_size_gb(self) -> float:
        return self.max_size / BYTES_PER_GB

    @property
    def current_size_gb(self) -> float:
        return self.current_size / BYTES_PER_GB

    # ------------------------------------------------------------------ paths

    def path_for(self, filename: str) -> str:
        """Absolute path of a picture file; rejects anything outside the directory."""
        if not filename or os.path.basename(filename) != filename or filename in (".", ".."):
            raise PictureNotFound(filename)
        path = os.path.abspath(os.path.join(self.directory, filename))
        if os.path.dirname(path) != self.directory:
            raise PictureNotFound(filename)
        return path

    def _unique_filename(self, camera_id: str, captured_at: datetime, labels: Sequence[str]) -> str:
        filename = format_filename(camera_id, captured_at, labels)
        attempt = 1
        while self._filename_taken(filename):
            base, sep, rest = filename.partition("_")
            stamp_time, _, remainder = rest.partition("_")
            seconds, _, tail = remainder.partition("_")
            seconds = _COLLISION_SUFFIX.sub("", seconds)
            filename = f"{base}{sep}{stamp_time}_{seconds}-{attempt}_{tail}"
            attempt += 1
        return filename

    def _filename_taken(self, filename: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM pictures WHERE filename = ?", (filename,)).fetchone()
        return row is not None or os.path.exists(os.path.join(self.directory, filename))

    # ------------------------------------------------------------------ mutations

    def save(self, camera_id: str, image: bytes, detections: Optional[Sequence[Detection]] = None,
             captured_at: Optional[datetime] = None) -> Picture:
        """
        Store a picture, evicting the oldest ones if it would not fit.

        The new file is written before anything is evicted, and the evicted rows
        are dropped in the same transaction that indexes the new picture, so a
        failed save leaves the archive as it was.

        Raises:
            ArchiveFull: the picture alone is larger than the quota
            StorageIOError: the file could not be written or indexed (archive unchanged)
        """
        if not image:
            raise InvalidFrame("Cannot archive an empty image")
        if not camera_id or not camera_id.strip():
            raise InvalidFrame("Cannot archive a picture without a camera")

        detections = list(detections or [])
        captured_at = captured_at or datetime.now()
        size = len(image)
        labels = _unique_labels([d.label for d in detections])

        with self.lock:
            if size > self.max_size:
                raise ArchiveFull(size, self.max_size)
            victims = self._select_evictions(size)

            filename = self._unique_filename(camera_id, captured_at, labels)
            path = os.path.join(self.directory, filename)
            try:
                with open(path, 'wb') as f:
                    f.write(image)
            except OSError as e:
                self._discard_file(path)
                logger.error(f"Error saving picture {filename}: {e}")
                raise StorageIOError(f"Failed to write {filename}: {e}") from e

            try:
                with self.conn:
                    for victim in victims:
                        self._delete_rows(victim['id'])
                    cursor = self.conn.execute(
                        "INSERT INTO pictures (filename, camera, captured_at, capture_date, capture_time, filesize) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (filename, camera_id, captured_at.isoformat(sep=' ', timespec='microseconds'),
                         captured_at.date().isoformat(), captured_at.strftime('%H:%M:%S'), size)
                    )
                    picture_id = cursor.lastrowid
                    self.conn.executemany(
                        "INSERT INTO detections (picture_id, object_name, x, y, width, height, confidence) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        [(picture_id, d.label, d.x, d.y, d.width, d.height, d.confidence) for d in detections]
                    )
            except sqlite3.Error as e:
                self._discard_file(path)
                logger.error(f"Error indexing picture {filename}: {e}")
                raise StorageIOError(f"Failed to index {filename}: {e}") from e

            for victim in victims:
                self._remove_evicted_file(victim['filename'])
            self.current_size += size - sum(victim['filesize'] for victim in victims)
            self.total_saved += 1
            self.total_evicted += len(victims)

        logger.info(f"Saved picture {filename} ({size / 1024:.1f}KB), "
                    f"archive at {self.current_size / BYTES_PER_GB:.3f}/{self.max_size_gb:.2f}GB")
        return Picture(filename=filename, camera=camera_id, captured_at=captured_at, objects=labels, size=size)

    def delete(self, filename: str) -> Picture:
        """
        Remove one picture's file and metadata.

        Raises:
            PictureNotFound: no such picture in the archive
            StorageIOError: the file exists but could not be removed (picture kept)
        """
        with self.lock:
            path = self.path_for(filename)
            row = self.conn.execute(
                "SELECT id, filename, camera, captured_at, filesize FROM pictures WHERE filename = ?", (filename,)
            ).fetchone()
            if row is None:
                raise PictureNotFound(filename)

            picture = self._row_to_picture(row, self._objects_for([row['id']]).get(row['id'], []))
            self._remove_row(row['id'], path, row['filesize'])

        logger.info(f"Deleted picture: {filename}")
        return picture

    def clear(self) -> int:
        """
        Remove every picture. Returns the number of pictures removed.

        Raises:
            StorageIOError: some files could not be removed; those pictures stay indexed
        """
        removed = 0
        failed = []
        with self.lock:
            rows = self.conn.execute("SELECT id, filename, filesize FROM pictures").fetchall()
            for row in rows:
                try:
                    self._remove_row(row['id'], os.path.join(self.directory, row['filename']), row['filesize'])
                    removed += 1
                except StorageIOError:
                    failed.append(row['filename'])

        if failed:
            raise StorageIOError(f"Failed to remove {len(failed)} of {len(rows)} pictures: {', '.join(failed[:5])}")
        logger.info(f"All pictures cleared from directory: {self.directory} ({removed} removed)")
        return removed

    def _select_evictions(self, incoming: int) -> List[sqlite3.Row]:
        """Oldest pictures that must go for ``incoming`` more bytes to fit under the quota."""
        excess = self.current_size + incoming - self.max_size
        if excess <= 0:
            return []

        victims, freed = [], 0
        for row in self.conn.execute(
                "SELECT id, filename, filesize FROM pictures ORDER BY captured_at ASC, filename ASC").fetchall():
            if freed >= excess:
                break
            victims.append(row)
            freed += row['filesize']

        if freed < excess:
            raise ArchiveFull(incoming, self.max_size)
        return victims

    def _enforce_quota(self, incoming: int) -> None:
        """Evict oldest pictures until ``incoming`` more bytes fit under the quota."""
        for victim in self._select_evictions(incoming):
            self._remove_row(victim['id'], os.path.join(self.directory, victim['filename']), victim['filesize'])
            self.total_evicted += 1
            logger.info(f"Evicted oldest picture {victim['filename']} to stay within quota")

    def _delete_rows(self, picture_id: int) -> None:
        self.conn.execute("DELETE FROM detections WHERE picture_id = ?", (picture_id,))
        self.conn.execute("DELETE FROM pictures WHERE id = ?", (picture_id,))

    def _remove_row(self, picture_id: int, path: str, size: int) -> None:
        """Drop a picture's rows and file together; on failure both are kept."""
        try:
            with self.conn:
                self._delete_rows(picture_id)
                try:
                    os.remove(path)
                except FileNotFoundError:
                    logger.warning(f"Picture file already missing: {path}")
                except OSError as e:
                    logger.error(f"Failed to delete file {path}: {e}")
                    raise StorageIOError(f"Failed to delete {os.path.basename(path)}: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Failed to remove index entry for {path}: {e}")
            raise StorageIOError(f"Failed to unindex {os.path.basename(path)}: {e}") from e
        self.current_size -= size

    def _remove_evicted_file(self, filename: str) -> None:
        try:
            os.remove(os.path.join(self.directory, filename))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to delete evicted picture file {filename}: {e}")
        logger.info(f"Evicted oldest picture {filename} to stay within quota")

    @staticmethod
    def _discard_file(path: str) -> None:
        try:
            os.remove(path)
        except OSError:
            pass

    # ------------------------------------------------------------------ queries

    def list(self, filter: Optional[PictureFilter] = None, page: int = 1,
             page_size: int = DEFAULT_PAGE_SIZE) -> PicturePage:
        """Filtered, newest-first, 1-indexed page of pictures."""
        filter = filter or PictureFilter()
        page = max(1, int(page))
        page_size = min(max(1, int(page_size)), MAX_PAGE_SIZE)
        where, args = self._where(filter)

        with self.lock:
            total_count = self.conn.execute(f"SELECT COUNT(*) FROM pictures p {where}", args).fetchone()[0]
            rows = self.conn.execute(
                f"SELECT p.id, p.filename, p.camera, p.captured_at, p.filesize FROM pictures p {where} "
                "ORDER BY p.captured_at DESC, p.filename ASC LIMIT ? OFFSET ?",
                [*args, page_size, (page - 1) * page_size]
            ).fetchall()
            objects = self._objects_for([row['id'] for row in rows])
            current_size = self.current_size

        total_pages = (total_count + page_size - 1) // page_size
        return PicturePage(
            items=[self._row_to_picture(row, objects.get(row['id'], [])) for row in rows],
            current_page=page,
            total_pages=total_pages,
            total_count=total_count,
            page_size=page_size,
            current_size=current_size,
            max_size=self.max_size,
        )

    def get(self, filename: str) -> Optional[Picture]:
        with self.lock:
            row = self.conn.execute(
                "SELECT id, filename, camera, captured_at, filesize FROM pictures WHERE filename = ?", (filename,)
            ).fetchone()
            if row is None:
                return None
            return self._row_to_picture(row, self._objects_for([row['id']]).get(row['id'], []))

    def get_detections(self, filename: str) -> List[Detection]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT d.object_name, d.confidence, d.x, d.y, d.width, d.height FROM detections d "
                "JOIN pictures p ON p.id = d.picture_id WHERE p.filename = ? ORDER BY d.id",
                (filename,)
            ).fetchall()
        return [Detection(label=r['object_name'], confidence=r['confidence'], x=r['x'], y=r['y'],
                          width=r['width'], height=r['height']) for r in rows]

    def count(self) -> int:
        with self.lock:
            return self.conn.execute("SELECT COUNT(*) FROM pictures").fetchone()[0]

    def usage(self) -> Dict[str, Any]:
        with self.lock:
            return {
                'pictures': self.conn.execute("SELECT COUNT(*) FROM pictures").fetchone()[0],
                'size': self.current_size,
                'max_size': self.max_size,
                'size_gb': self.current_size_gb,
                'max_size_gb': self.max_size_gb,
                'total_saved': self.total_saved,
                'total_evicted': self.total_evicted,
            }

    def filter_options(self) -> Dict[str, List[str]]:
        """Distinct cameras and object labels present in the archive, for filter dropdowns."""
        with self.lock:
            cameras = [row[0] for row in
                       self.conn.execute("SELECT DISTINCT camera FROM pictures ORDER BY camera").fetchall()]
            objects = [row[0] for row in
                       self.conn.execute("SELECT DISTINCT object_name FROM detections ORDER BY object_name").fetchall()]
        return {'cameras': cameras, 'objects': objects}

    def stats(self) -> Dict[str, Any]:
        """Picture totals, per-camera counts and the ten most detected objects."""
        with self.lock:
            total_images = self.conn.execute("SELECT COUNT(*) FROM pictures").fetchone()[0]
            per_camera = {row['camera']: row['cnt'] for row in self.conn.execute(
                "SELECT camera, COUNT(*) AS cnt FROM pictures GROUP BY camera ORDER BY camera")}
            object_counts = {row['object_name']: row['cnt'] for row in self.conn.execute(
                "SELECT object_name, COUNT(*) AS cnt FROM detections "
                "GROUP BY object_name ORDER BY cnt DESC, object_name ASC LIMIT 10")}
            total_size = self._indexed_size()
        return {
            'total_images': total_images,
            'total_size_bytes': total_size,
            'per_camera': per_camera,
            'object_counts': object_counts,
        }

    @staticmethod
    def _where(filter: PictureFilter) -> Tuple[str, List[Any]]:
        clauses, args = [], []
        if filter.camera is not None:
            clauses.append("p.camera = ?")
            args.append(filter.camera)
        if filter.object is not None:
            clauses.append("EXISTS (SELECT 1 FROM detections d WHERE d.picture_id = p.id AND d.object_name = ?)")
            args.append(filter.object)
        if filter.date_after is not None:
            clauses.append("p.capture_date >= ?")
            args.append(filter.date_after.isoformat())
        if filter.date_before is not None:
            clauses.append("p.capture_date <= ?")
            args.append(filter.date_before.isoformat())
        if filter.time_after is not None:
            clauses.append("p.capture_time >= ?")
            args.append(filter.time_after.strftime('%H:%M:%S'))
        if filter.time_before is not None:
            clauses.append("p.capture_time <= ?")
            args.append(filter.time_before.strftime('%H:%M:%S'))
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        return where, args

    def _objects_for(self, picture_ids: Sequence[int]) -> Dict[int, List[str]]:
        if not picture_ids:
            return {}
        placeholders = ",".join("?" for _ in picture_ids)
        rows = self.conn.execute(
            f"SELECT picture_id, object_name FROM detections WHERE picture_id IN ({placeholders}) ORDER BY id",
            list(picture_ids)
        ).fetchall()
        objects: Dict[int, List[str]] = {}
        for row in rows:
            labels = objects.setdefault(row['picture_id'], [])
            if row['object_name'] not in labels:
                labels.append(row['object_name'])
        return objects

    @staticmethod
    def _row_to_picture(row: sqlite3.Row, objects: List[str]) -> Picture:
        return Picture(
            filename=row['filename'],
            camera=row['camera'],
            captured_at=datetime.fromisoformat(row['captured_at']),
            objects=objects,
            size=row['filesize'],
        )

    def _indexed_size(self) -> int:
        return self.conn.execute("SELECT COALESCE(SUM(filesize), 0) FROM pictures").fetchone()[0]

    # ------------------------------------------------------------------ maintenance

    def reindex(self) -> Tuple[int, int]:
        """
        Reconcile the index with the directory.

        Image files in the legacy filename format that are not indexed are
        added; index rows whose file disappeared are dropped.

        Returns:
            (added, removed)
        """
        added = removed = 0
        with self.lock:
            indexed = {row['filename']: row['id'] for row in
                       self.conn.execute("SELECT id, filename FROM pictures").fetchall()}

            for filename, picture_id in indexed.items():
                if not os.path.exists(os.path.join(self.directory, filename)):
                    with self.conn:
                        self._delete_rows(picture_id)
                    removed += 1

            for entry in sorted(os.scandir(self.directory), key=lambda e: e.name):
                if not entry.is_file() or not entry.name.endswith(IMAGE_EXTENSION) or entry.name in indexed:
                    continue
                try:
                    captured_at, camera, objects = parse_filename(entry.name)
                except ValueError as e:
                    logger.warning(f"Skipping {entry.name}: {e}")
                    continue

                with self.conn:
                    cursor = self.conn.execute(
                        "INSERT INTO pictures (filename, camera, captured_at, capture_date, capture_time, filesize) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (entry.name, camera, captured_at.isoformat(sep=' ', timespec='microseconds'),
                         captured_at.date().isoformat(), captured_at.strftime('%H:%M:%S'), entry.stat().st_size)
                    )
                    self.conn.executemany(
                        "INSERT INTO detections (picture_id, object_name) VALUES (?, ?)",
                        [(cursor.lastrowid, label) for label in objects]
                    )
                added += 1

            self.current_size = self._indexed_size()

        if added or removed:
            logger.info(f"Reindexed archive: {added} pictures added, {removed} stale entries removed")
        return added, removed

    def close(self) -> None:
        with self.lock:
            self.conn.close()


def create_archive_config(config_data: dict) -> ArchiveConfig:
    """Create the archive config object from configuration data."""
    archive = config_data.get('archive', {})
    defaults = ArchiveConfig()
    return ArchiveConfig(
        directory=archive.get('directory', defaults.directory),
        database=archive.get('database', defaults.database),
        max_size_gb=float(archive.get('max_size_gb', defaults.max_size_gb)),
        policy=archive.get('policy', defaults.policy),
        max_pictures_per_window=int(archive.get('max_pictures_per_window', defaults.max_pictures_per_window)),
        window_seconds=float(archive.get('window_seconds', defaults.window_seconds)),
        queue_size=int(archive.get('queue_size', defaults.queue_size)),
        draw_overlays=bool(archive.get('draw_overlays', defaults.draw_overlays)),
    )
