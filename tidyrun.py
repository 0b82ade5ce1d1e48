# tidyrun.py
"""
TidyRun - Core Engine
=====================

This file contains the core, reusable logic of the TidyRun folder organizer.
It sorts the files of a folder into category folders, regroups episodic media
into 'Series/Season NN/' trees and sends every filesystem change through a
collision-safe mover that writes an append-only operation log, so any run can
be undone later.

This engine is UI-agnostic. It does not contain any `print` statements or
argument parsing. It communicates its state and progress via `logging` and
the result objects returned by its public functions.

Only one invocation may work on a given target folder or operation log at a
time. There is no cross-process locking, and the collision checks race with
any other writer.
"""

from pathlib import Path
import re
import os
import sys
import json
import time
import uuid
import types
import logging
from dataclasses import dataclass, field, fields, asdict, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any, Set, List, Tuple, Union, FrozenSet, Iterable

__version__ = "1.0.0"

APP_NAME = "TidyRun"
LOG_FILE_NAME = "organizer-logs.jsonl"

# --- Errors ---

class TidyRunError(Exception):
    """Base error for the engine."""

class DirectoryNotFoundError(TidyRunError, FileNotFoundError):
    pass

# --- Classification Tables ---

VIDEO_EXTENSIONS = ('mp4', 'avi', 'mov', 'wmv', 'mkv', 'flv', 'webm', 'm4v', '3gp')
IMAGE_EXTENSIONS = ('jpg', 'jpeg', 'png', 'gif', 'bmp', 'tiff', 'webp', 'svg')
DOCUMENT_EXTENSIONS = ('doc', 'docx', 'pdf', 'txt', 'rtf')
AUDIO_EXTENSIONS = ('mp3', 'wav', 'flac', 'aac', 'ogg', 'wma')
ARCHIVE_EXTENSIONS = ('zip', 'rar', '7z', 'tar', 'gz', 'iso')
EXECUTABLE_EXTENSIONS = ('exe', 'msi', 'dmg', 'pkg')
CODE_EXTENSIONS = ('js', 'html', 'css', 'py', 'java', 'cpp', 'c', 'php', 'xml', 'json')
PRESENTATION_EXTENSIONS = ('ppt', 'pptx')
SPREADSHEET_EXTENSIONS = ('xls', 'xlsx')
OTHER_CATEGORY = "Other Files"

# Order matters: the first table listing an extension wins.
CATEGORY_TABLES = (
    ("Videos", VIDEO_EXTENSIONS), ("Images", IMAGE_EXTENSIONS), ("Documents", DOCUMENT_EXTENSIONS),
    ("Audio", AUDIO_EXTENSIONS), ("Archives", ARCHIVE_EXTENSIONS), ("Executables", EXECUTABLE_EXTENSIONS),
    ("Code", CODE_EXTENSIONS), ("Presentations", PRESENTATION_EXTENSIONS), ("Spreadsheets", SPREADSHEET_EXTENSIONS),
)

def _build_extension_map() -> types.MappingProxyType:
    mapping: Dict[str, str] = {}
    for label, extensions in CATEGORY_TABLES:
        for ext in extensions: mapping.setdefault(ext, label)
    return types.MappingProxyType(mapping)

EXTENSION_CATEGORIES = _build_extension_map()

def file_extension(name: str) -> str:
    return os.path.splitext(name)[1].lstrip('.').lower()

def classify(extension: str) -> str:
    """Map an extension ('mkv', '.MKV') to its category folder name."""
    return EXTENSION_CATEGORIES.get(extension.strip().lstrip('.').lower(), OTHER_CATEGORY)

# --- Episode Name Parsing ---

MOVIES = "Movies"
UNKNOWN_SERIES = "Unknown Series"

@dataclass(frozen=True)
class ParsedEpisode:
    series_name: str
    season: Optional[str]
    episode: Optional[str]

    @property
    def season_key(self) -> Union[int, str, None]:
        if self.season is None or self.season == MOVIES: return self.season
        return int(self.season)

class EpisodeParser:
    """
    Pulls series name, season and episode out of a release-style filename.

    Patterns are tried in a fixed order and the first hit wins, so changing the
    order changes the output. Separators ('.', '_', '-') are turned into spaces
    before matching. Every pattern, the compact 'S0305' and '2x07' forms
    included, takes the series name from the text in front of the match, so
    'Lost.S0305.mkv' lands under 'Lost' rather than 'Unknown Series'.
    """
    SEPARATORS = re.compile(r'[._-]+')
    QUALITY_TAGS = re.compile(r'\b(480p|720p|1080p|2160p|4k|8k|uhd|hd|sd)\b', re.IGNORECASE)
    RELEASE_TAGS = re.compile(r'\b(repack|proper|dirfix|dvdrip|webrip|hdtv|bluray)\b', re.IGNORECASE)
    # (name, pattern, default episode when the pattern has no episode group)
    PATTERNS = (
        ('season_episode', re.compile(r'S(\d{1,2})\s*EP?\s*(\d{1,2})', re.IGNORECASE), None),
        ('compact', re.compile(r'S(\d{2})(\d{2})', re.IGNORECASE), None),
        ('cross', re.compile(r'(\d{1,2})x(\d{1,2})', re.IGNORECASE), None),
        ('season_only', re.compile(r'S(\d{1,2})(?!\d)', re.IGNORECASE), '01'),
    )

    @classmethod
    def sanitize(cls, name: str) -> str:
        return re.sub(r'\s+', ' ', cls.SEPARATORS.sub(' ', name)).strip()

    @classmethod
    def normalize(cls, filename: str) -> str:
        return cls.SEPARATORS.sub(' ', os.path.splitext(os.path.basename(filename))[0])

    @classmethod
    def clean_series_name(cls, raw: str) -> str:
        name = cls.QUALITY_TAGS.sub('', cls.sanitize(raw))
        return cls.sanitize(cls.RELEASE_TAGS.sub('', name))

    @classmethod
    def parse(cls, filename: str) -> ParsedEpisode:
        normalized = cls.normalize(filename)
        for _, pattern, default_episode in cls.PATTERNS:
            m = pattern.search(normalized)
            if not m: continue
            series = cls.clean_series_name(normalized[:m.start()]) or UNKNOWN_SERIES
            return ParsedEpisode(series, m.group(1), default_episode or m.group(2))
        if 'movie' in filename.lower(): return ParsedEpisode(MOVIES, MOVIES, None)
        return ParsedEpisode(UNKNOWN_SERIES, None, None)

def parse_series(filename: str) -> ParsedEpisode:
    return EpisodeParser.parse(filename)

def parse_series_name(filename: str) -> str:
    return EpisodeParser.parse(filename).series_name

def standardized_name(series_name: str, season: Union[int, str], episode: Union[int, str], extension: str) -> str:
    return f"{series_name} S{str(season).zfill(2)}E{str(episode).zfill(2)}{extension}"

def season_sort_key(key: Union[int, str]) -> Tuple[int, int]:
    return (1, 0) if key == MOVIES else (0, int(key))

def season_folder_name(key: Union[int, str]) -> str:
    return MOVIES if key == MOVIES else f"Season {int(key):02d}"

def safe_folder_name(name: str) -> str:
    return re.sub(r'[<>:"/\\|?*]', '', name).strip() or UNKNOWN_SERIES

@dataclass(frozen=True)
class SeriesEntry:
    original: str
    standardized: str

def build_series_groups(filenames: Iterable[str]) -> Dict[str, Dict[Union[int, str], List[SeriesEntry]]]:
    """Series -> season key -> entries. Files without a season are left out."""
    groups: Dict[str, Dict[Union[int, str], List[SeriesEntry]]] = {}
    for name in filenames:
        parsed = EpisodeParser.parse(name)
        if parsed.season is None:
            logging.debug(f"No season detected in '{name}', leaving it in place.")
            continue
        series = safe_folder_name(parsed.series_name)
        if parsed.season == MOVIES: target = name
        else: target = standardized_name(series, parsed.season, parsed.episode, os.path.splitext(name)[1])
        groups.setdefault(series, {}).setdefault(parsed.season_key, []).append(SeriesEntry(name, target))
    return groups

# --- Operation Log ---

class Action(Enum):
    MOVE = "move"; GROUP = "group"; UNDO = "undo"; RUN_START = "run-start"; RUN_END = "run-end"; UNDO_START = "undo-start"; UNDO_END = "undo-end"

class Status(Enum):
    SUCCESS = "success"; SKIPPED = "skipped"; ERROR = "error"; PREVIEW = "preview"

REVERSIBLE_ACTIONS = (Action.MOVE, Action.GROUP)

def generate_run_id() -> str:
    return f"run-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"

def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)

@dataclass(frozen=True)
class OperationRecord:
    timestamp: str
    run_id: Optional[str]
    action: Action
    status: Status
    source: Optional[str] = None
    destination: Optional[str] = None
    message: str = ""
    dry_run: bool = False
    target_run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['action'], d['status'] = self.action.value, self.status.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OperationRecord':
        if not isinstance(data, dict): raise ValueError("Log record is not an object.")
        return cls(
            timestamp=str(data.get('timestamp') or ''), run_id=data.get('run_id') or None,
            action=Action(data['action']), status=Status(data['status']),
            source=_as_str(data.get('source')), destination=_as_str(data.get('destination')),
            message=str(data.get('message') or ''), dry_run=bool(data.get('dry_run', False)),
            target_run_id=data.get('target_run_id') or None,
        )

    @property
    def is_reversible(self) -> bool:
        return self.status == Status.SUCCESS and self.action in REVERSIBLE_ACTIONS and bool(self.source) and bool(self.destination)

    @property
    def parsed_time(self) -> Optional[datetime]:
        try: stamp = datetime.fromisoformat(self.timestamp.replace('Z', '+00:00'))
        except ValueError: return None
        return stamp if stamp.tzinfo else stamp.replace(tzinfo=timezone.utc)

class OperationLog:
    """
    Append-only JSON Lines store, one operation record per line.

    Each record goes out as a single write of one complete line, so a crash can
    at worst leave a torn last line. Readers skip any line they cannot parse.
    Logging is best-effort: a failed append is reported and never raised.
    """
    MAX_READ = 1000
    DEFAULT_READ = 200

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._last_stamp: Optional[datetime] = None

    def _timestamp(self) -> str:
        now = datetime.now(timezone.utc)
        if self._last_stamp and now < self._last_stamp: now = self._last_stamp
        self._last_stamp = now
        return now.isoformat(timespec='milliseconds')

    def _needs_separator(self) -> bool:
        # A torn tail from an interrupted writer must not swallow the next record.
        try:
            with open(self.path, 'rb') as f:
                f.seek(0, os.SEEK_END)
                if f.tell() == 0: return False
                f.seek(-1, os.SEEK_END)
                return f.read(1) != b"\n"
        except FileNotFoundError:
            return False

    def append(self, run_id: Optional[str], action: Action, status: Status, source: Any = None, destination: Any = None,
               message: str = "", dry_run: bool = False, target_run_id: Optional[str] = None) -> Optional[OperationRecord]:
        record = OperationRecord(self._timestamp(), run_id, action, status, _as_str(source), _as_str(destination),
                                 message, dry_run, target_run_id)
        line = (json.dumps(record.to_dict(), ensure_ascii=False) + "\n").encode('utf-8')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self._needs_separator(): line = b"\n" + line
            with open(self.path, 'ab') as f:
                f.write(line); f.flush(); os.fsync(f.fileno())
        except OSError as e:
            logging.error(f"Failed to write log entry to '{self.path}': {e}")
            return None
        return record

    def read_all(self) -> List[OperationRecord]:
        try: content = self.path.read_text(encoding='utf-8', errors='replace')
        except FileNotFoundError: return []
        except OSError as e: logging.error(f"Could not read operation log '{self.path}': {e}"); return []
        records = []
        for line in content.splitlines():
            if not line.strip(): continue
            try: records.append(OperationRecord.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError): continue
        return records

    def read_recent(self, limit: Optional[int] = DEFAULT_READ) -> List[OperationRecord]:
        """Most recent records, newest first. A missing or zero limit means DEFAULT_READ; negative means none."""
        limit = int(limit or self.DEFAULT_READ)
        if limit < 0: return []
        return list(reversed(self.read_all()[-min(limit, self.MAX_READ):]))

# --- Collision-Safe Mover ---

@dataclass(frozen=True)
class Resolution:
    final_path: Path
    is_noop: bool

@dataclass(frozen=True)
class Outcome:
    action: Action
    status: Status
    source: str
    destination: Optional[str]
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {'action': self.action.value, 'status': self.status.value, 'source': self.source,
                'destination': self.destination, 'message': self.message}

class FileMover:
    """
    Moves one entry at a time without ever overwriting anything.

    Destinations handed out during an invocation are remembered, and in dry-run
    mode so are the sources that would have been vacated. That keeps a preview
    and the real run on the same final paths, and keeps two sources off the
    same destination.
    """
    SUFFIX_LIMIT = 50

    def __init__(self, log: OperationLog, run_id: str, dry_run: bool = False):
        self.log, self.run_id, self.dry_run = log, run_id, dry_run
        self._claimed: Set[Path] = set()
        self._vacated: Set[Path] = set()

    def _occupied(self, p: Path) -> bool:
        return p in self._claimed or (os.path.lexists(p) and p not in self._vacated)

    def _claim(self, p: Path) -> Resolution:
        self._claimed.add(p)
        return Resolution(p, False)

    @staticmethod
    def is_same_file(a: Path, b: Path) -> bool:
        try: sa, sb = os.lstat(a), os.lstat(b)
        except OSError: return False
        return (sa.st_dev, sa.st_ino) == (sb.st_dev, sb.st_ino)

    @staticmethod
    def trailing_suffix(path: Path) -> Optional[str]:
        """Last whitespace-separated token of the stem: 'Show S01E01 Director Cut' gives 'Cut', not 'S01E01 Director Cut'."""
        m = re.search(r'\s(\S+)$', path.stem)
        return m.group(1) if m else None

    def resolve(self, old_path: Union[str, Path], desired_path: Union[str, Path], keep_suffix: bool = False) -> Resolution:
        old_path, desired = Path(old_path), Path(desired_path)
        if not self._occupied(desired): return self._claim(desired)
        if desired not in self._claimed and self.is_same_file(old_path, desired): return Resolution(desired, True)
        stem, ext = desired.stem, desired.suffix
        if keep_suffix:
            suffix = self.trailing_suffix(old_path)
            if suffix and len(suffix) < self.SUFFIX_LIMIT:
                candidate = desired.with_name(f"{stem} {suffix}{ext}")
                if not self._occupied(candidate): return self._claim(candidate)
        counter = 1
        while True:
            candidate = desired.with_name(f"{stem} ({counter}){ext}")
            if not self._occupied(candidate): return self._claim(candidate)
            counter += 1

    def execute(self, old_path: Union[str, Path], final_path: Union[str, Path], dry_run: bool) -> None:
        """Rename in place. Raises OSError and leaves the source alone on failure."""
        if dry_run:
            self._vacated.add(Path(old_path))
            return
        os.rename(old_path, final_path)

    def record(self, action: Action, status: Status, source: Any, destination: Any, message: str) -> Outcome:
        self.log.append(self.run_id, action, status, source, destination, message, dry_run=self.dry_run)
        return Outcome(action, status, str(source), _as_str(destination), message)

    def move(self, old_path: Union[str, Path], desired_path: Union[str, Path], action: Action = Action.MOVE,
             keep_suffix: bool = False) -> Outcome:
        old_path, desired_path = Path(old_path), Path(desired_path)
        try:
            resolution = self.resolve(old_path, desired_path, keep_suffix)
            if resolution.is_noop:
                logging.info(f"Skipping move: '{old_path.name}' is already in its correct location.")
                return self.record(action, Status.SKIPPED, old_path, resolution.final_path, "Source and destination are the same file.")
            self.execute(old_path, resolution.final_path, self.dry_run)
        except OSError as e:
            logging.error(f"ERROR moving '{old_path.name}': {e}")
            return self.record(action, Status.ERROR, old_path, desired_path, str(e))
        final = resolution.final_path
        verb = "grouped" if action == Action.GROUP else "moved"
        if self.dry_run:
            logging.info(f"DRY RUN: '{old_path.name}' -> '{final}'")
            return self.record(action, Status.PREVIEW, old_path, final, f"{old_path.name} would be {verb}.")
        logging.info(f"Moved: '{old_path.name}' -> '{final}'")
        return self.record(action, Status.SUCCESS, old_path, final, f"{old_path.name} {verb} successfully.")

    def ensure_dir(self, p: Optional[Path]) -> bool:
        if not p: logging.error("Destination directory path is not set."); return False
        if p.is_dir(): return True
        if os.path.lexists(p): logging.error(f"Could not create directory '{p}': a file is in the way"); return False
        if self.dry_run: logging.info(f"DRY RUN: Would create dir '{p}'"); return True
        try: p.mkdir(parents=True, exist_ok=True)
        except OSError as e: logging.error(f"Could not create directory '{p}': {e}"); return False
        return True

# --- Configuration ---

def home_dir(env: Optional[Dict[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    home = env.get("USERPROFILE") or env.get("HOME")
    return Path(home) if home else Path.home()

def app_data_dir(home: Path) -> Path:
    if sys.platform == "win32": return Path(os.getenv("APPDATA") or home / "AppData" / "Roaming") / APP_NAME
    if sys.platform == "darwin": return home / "Library" / "Application Support" / APP_NAME
    return home / ".config" / APP_NAME

def list_default_directories(home: Union[str, Path, None] = None) -> Dict[str, Path]:
    home = Path(home) if home else home_dir()
    return {
        'downloads': home / 'Downloads', 'documents': home / 'Documents', 'pictures': home / 'Pictures',
        'videos': home / 'Videos', 'desktop': home / 'Desktop', 'series': home / 'Videos' / 'Series',
    }

@dataclass(frozen=True)
class Config:
    """Process-wide settings. Built once, then passed around read-only."""
    VIDEOS_DIR: str = ""
    PICTURES_DIR: str = ""
    MEDIA_ROOT: str = ""
    LOG_FILE: str = ""

    @classmethod
    def from_environment(cls, home: Union[str, Path, None] = None) -> 'Config':
        home = Path(home) if home else home_dir()
        videos = home / 'Videos'
        return cls(VIDEOS_DIR=str(videos), PICTURES_DIR=str(home / 'Pictures'), MEDIA_ROOT=str(videos),
                   LOG_FILE=str(app_data_dir(home) / LOG_FILE_NAME))

    def get_path(self, key: str) -> Optional[Path]:
        p = getattr(self, key); return Path(p) if p else None

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional['Config'] = None) -> 'Config':
        known = {f.name for f in fields(cls)}
        values = {k: str(v) for k, v in data.items() if k in known and v}
        if 'VIDEOS_DIR' in values and 'MEDIA_ROOT' not in values: values['MEDIA_ROOT'] = values['VIDEOS_DIR']
        return replace(base or cls.from_environment(), **values)

    def save(self, path: Path):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f: json.dump(self.to_dict(), f, indent=4)
        except OSError as e: logging.error(f"Failed to save config to '{path}': {e}")

    @classmethod
    def load(cls, path: Path) -> 'Config':
        if not path.exists(): return cls.from_environment()
        try:
            with open(path, 'r', encoding='utf-8') as f: content = f.read()
            if not content.strip(): return cls.from_environment()
            data = json.loads(content)
            if not isinstance(data, dict): raise ValueError("top level must be an object")
            return cls.from_dict(data)
        except (OSError, ValueError) as e:
            logging.error(f"Error loading config from '{path}': {e}. Loading defaults.")
            return cls.from_environment()

    def validate(self) -> Tuple[bool, str]:
        for key in ('VIDEOS_DIR', 'PICTURES_DIR', 'MEDIA_ROOT', 'LOG_FILE'):
            if not getattr(self, key): return False, f"{key} is not set."
        lf = self.get_path('LOG_FILE')
        if lf.is_dir(): return False, f"Log file path points to a directory: {lf}"
        return True, "Validation successful."

def setup_logging(log_file: Path, log_to_console: bool = False):
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handlers = [logging.FileHandler(log_file, encoding='utf-8')]
    if log_to_console: handlers.append(logging.StreamHandler(sys.stdout))
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s", handlers=handlers, force=True)

# --- Options ---

def normalize_list(value: Union[str, Iterable[str], None]) -> FrozenSet[str]:
    if not value: return frozenset()
    items = value.split(',') if isinstance(value, str) else value
    return frozenset(s for s in (str(i).strip().lower() for i in items) if s)

def normalize_extensions(value: Union[str, Iterable[str], None]) -> FrozenSet[str]:
    return frozenset(e for e in (x.lstrip('.') for x in normalize_list(value)) if e)

@dataclass(frozen=True)
class OrganizeOptions:
    dry_run: bool = False
    move_to_system_folders: bool = False
    include_extensions: FrozenSet[str] = frozenset()
    exclude_extensions: FrozenSet[str] = frozenset()
    exclude_names: FrozenSet[str] = frozenset()
    run_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'dry_run', bool(self.dry_run))
        object.__setattr__(self, 'move_to_system_folders', bool(self.move_to_system_folders))
        object.__setattr__(self, 'include_extensions', normalize_extensions(self.include_extensions))
        object.__setattr__(self, 'exclude_extensions', normalize_extensions(self.exclude_extensions))
        object.__setattr__(self, 'exclude_names', normalize_list(self.exclude_names))
        object.__setattr__(self, 'run_id', (str(self.run_id).strip() or None) if self.run_id is not None else None)

    def should_skip(self, name: str) -> bool:
        ext = file_extension(name)
        if name.strip().lower() in self.exclude_names: return True
        if ext in self.exclude_extensions: return True
        return bool(self.include_extensions) and ext not in self.include_extensions

@dataclass(frozen=True)
class UndoOptions:
    dry_run: bool = False
    run_id: Optional[str] = None
    remove_empty_dirs: bool = False

# --- Run Orchestrator ---

class RunMode(Enum):
    SERIES = "series-regroup"; DOWNLOADS = "downloads-special"; GENERIC = "generic-classify"

@dataclass
class OrganizeResult:
    run_id: str
    dry_run: bool
    mode: RunMode
    processed_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    series_count: int = 0
    preview: List[Outcome] = field(default_factory=list)

    @property
    def moved_count(self) -> int:
        return self.processed_count

    def add(self, outcome: Outcome):
        self.preview.append(outcome)
        if outcome.status in (Status.SUCCESS, Status.PREVIEW): self.processed_count += 1
        elif outcome.status == Status.ERROR: self.error_count += 1
        else: self.skipped_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {'run_id': self.run_id, 'dry_run': self.dry_run, 'mode': self.mode.value,
                'processed_count': self.processed_count, 'error_count': self.error_count,
                'skipped_count': self.skipped_count, 'series_count': self.series_count,
                'preview': [o.to_dict() for o in self.preview]}

def is_strict_subfolder(child: Path, parent: Path) -> bool:
    c = Path(os.path.normcase(str(Path(child).resolve())))
    p = Path(os.path.normcase(str(Path(parent).resolve())))
    return p in c.parents

class Organizer:
    """Drives one organize run: picks the mode, filters entries, moves them and logs everything."""
    SEASON_FOLDER_PATTERN = re.compile(r'^(.*?)\s+S(\d{2})$', re.IGNORECASE)

    def __init__(self, cfg: Config, options: Optional[OrganizeOptions] = None, log: Optional[OperationLog] = None):
        self.cfg = cfg
        self.options = options or OrganizeOptions()
        self.log = log or OperationLog(cfg.get_path('LOG_FILE'))

    def detect_mode(self, directory: Path) -> RunMode:
        media_root = self.cfg.get_path('MEDIA_ROOT')
        if media_root and is_strict_subfolder(directory, media_root): return RunMode.SERIES
        if 'downloads' in str(directory).lower(): return RunMode.DOWNLOADS
        return RunMode.GENERIC

    def run(self, directory: Union[str, Path]) -> OrganizeResult:
        directory = Path(directory)
        if not directory.is_dir(): raise DirectoryNotFoundError(f"Directory does not exist: {directory}")
        opts = self.options
        run_id = opts.run_id or generate_run_id()
        mode = self.detect_mode(directory)
        mover = FileMover(self.log, run_id, opts.dry_run)
        result = OrganizeResult(run_id=run_id, dry_run=opts.dry_run, mode=mode)

        logging.info(f"--- Starting {'dry-run' if opts.dry_run else 'organization'} of '{directory}' [{mode.value}] ---")
        self.log.append(run_id, Action.RUN_START, Status.SUCCESS, source=directory, dry_run=opts.dry_run,
                        message='Dry-run started.' if opts.dry_run else 'Organization started.')
        try:
            self.group_season_folders(directory, mover, result)
            if mode == RunMode.SERIES: self.group_by_season(directory, mover, result)
            elif mode == RunMode.DOWNLOADS: self.organize_downloads(directory, mover, result)
            else: self.organize_by_type(directory, mover, result)
        finally:
            self.log.append(run_id, Action.RUN_END, Status.SUCCESS, source=directory, dry_run=opts.dry_run,
                            message='Dry-run completed.' if opts.dry_run else 'Organization completed.')
        self.log_summary(result)
        return result

    def _scan(self, directory: Path, result: OrganizeResult) -> List[os.DirEntry]:
        try:
            with os.scandir(directory) as it: return sorted(it, key=lambda e: e.name)
        except OSError as e:
            logging.error(f"Could not list '{directory}': {e}")
            result.error_count += 1
            return []

    def list_eligible_files(self, directory: Path, result: OrganizeResult) -> List[str]:
        files = []
        for entry in self._scan(directory, result):
            try:
                if not entry.is_file(follow_symlinks=False): continue
            except OSError:
                continue
            if os.path.abspath(entry.path) == os.path.abspath(self.log.path): continue
            if self.options.should_skip(entry.name): logging.debug(f"Filtered out '{entry.name}'."); continue
            files.append(entry.name)
        return files

    def group_season_folders(self, directory: Path, mover: FileMover, result: OrganizeResult):
        """Nest top-level 'Show S01', 'Show S02' folders under 'Show' once a show has two or more."""
        shows: Dict[str, List[str]] = {}
        for entry in self._scan(directory, result):
            try:
                if not entry.is_dir(follow_symlinks=False): continue
            except OSError:
                continue
            if entry.name.strip().lower() in self.options.exclude_names: continue
            m = self.SEASON_FOLDER_PATTERN.match(entry.name)
            if m and m.group(1).strip(): shows.setdefault(m.group(1).strip(), []).append(entry.name)

        for show, folders in shows.items():
            if len(folders) < 2: continue
            show_dir = directory / safe_folder_name(show)
            logging.info(f"Grouping {len(folders)} season folders into '{show_dir.name}'")
            ready = mover.ensure_dir(show_dir)
            for folder in folders:
                if not ready:
                    result.add(mover.record(Action.GROUP, Status.ERROR, directory / folder, show_dir / folder, f"Could not create folder '{show_dir}'."))
                    continue
                result.add(mover.move(directory / folder, show_dir / folder, Action.GROUP))

    def group_by_season(self, directory: Path, mover: FileMover, result: OrganizeResult):
        groups = build_series_groups(self.list_eligible_files(directory, result))
        result.series_count = len(groups)
        if not groups: logging.info("No episodic files found to group."); return

        for series, seasons in groups.items():
            series_dir = directory / series
            for key in sorted(seasons, key=season_sort_key):
                season_dir = series_dir / season_folder_name(key)
                ready = mover.ensure_dir(season_dir)
                for entry in seasons[key]:
                    source = directory / entry.original
                    if not ready:
                        result.add(mover.record(Action.GROUP, Status.ERROR, source, season_dir / entry.standardized, f"Could not create folder '{season_dir}'."))
                        continue
                    result.add(mover.move(source, season_dir / entry.standardized, Action.GROUP, keep_suffix=True))
        logging.info(f"Series organization complete. Series: {len(groups)}")

    def organize_downloads(self, directory: Path, mover: FileMover, result: OrganizeResult):
        handled: Set[str] = set()
        if self.options.move_to_system_folders:
            videos, pictures = self.cfg.get_path('VIDEOS_DIR'), self.cfg.get_path('PICTURES_DIR')
            for name in self.list_eligible_files(directory, result):
                ext = file_extension(name)
                if ext in VIDEO_EXTENSIONS: system_dir = videos
                elif ext in IMAGE_EXTENSIONS: system_dir = pictures
                else: continue
                handled.add(name)
                source = directory / name
                if not mover.ensure_dir(system_dir):
                    result.add(mover.record(Action.MOVE, Status.ERROR, source, system_dir, "System folder is not available."))
                    continue
                result.add(mover.move(source, system_dir / name))
        self.organize_by_type(directory, mover, result, skip=handled)

    def organize_by_type(self, directory: Path, mover: FileMover, result: OrganizeResult, skip: Iterable[str] = ()):
        skip = set(skip)
        for name in self.list_eligible_files(directory, result):
            if name in skip: continue
            source = directory / name
            try:
                target_dir = directory / classify(file_extension(name))
                if not mover.ensure_dir(target_dir):
                    result.add(mover.record(Action.MOVE, Status.ERROR, source, None, f"Could not create folder '{target_dir}'."))
                    continue
                result.add(mover.move(source, target_dir / name))
            except Exception as e:
                logging.error(f"Fatal error processing '{name}': {e}", exc_info=True)
                result.add(mover.record(Action.MOVE, Status.ERROR, source, None, str(e)))

    def log_summary(self, result: OrganizeResult):
        summary = "\n\n--- RUN SUMMARY ---\n"
        rows = [('Run Id', result.run_id), ('Mode', result.mode.value), ('Dry Run', result.dry_run),
                ('Processed', result.processed_count), ('Skipped', result.skipped_count), ('Errors', result.error_count)]
        if result.mode == RunMode.SERIES: rows.append(('Series', result.series_count))
        for k, v in rows: summary += f"{k:<20}: {v}\n"
        summary += "-------------------\n"; logging.info(summary)

# --- Undo Engine ---

LEGACY_BATCH_GAP = timedelta(minutes=2)
LEGACY_BATCH_ID = "legacy-batch"

@dataclass
class UndoResult:
    run_id: Optional[str]
    undo_run_id: Optional[str]
    undone_count: int = 0
    error_count: int = 0
    message: str = ""
    dry_run: bool = False
    preview: List[Outcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'run_id': self.run_id, 'undo_run_id': self.undo_run_id, 'undone_count': self.undone_count,
                'error_count': self.error_count, 'message': self.message, 'dry_run': self.dry_run,
                'preview': [o.to_dict() for o in self.preview]}

class UndoEngine:
    """
    Replays the successful moves of an earlier run backwards.

    The run is picked by id, or is the latest run that really touched the disk.
    Logs written before run ids existed are handled by treating the newest
    stretch of id-less moves, each within LEGACY_BATCH_GAP of the next, as one
    batch. That boundary is a guess and can merge or split invocations that
    ran close together or slowly.
    """

    def __init__(self, log: OperationLog):
        self.log = log

    @staticmethod
    def find_latest_real_run_id(records: List[OperationRecord]) -> Optional[str]:
        for r in reversed(records):
            if r.action == Action.RUN_END and r.run_id and not r.dry_run: return r.run_id
        return None

    @staticmethod
    def find_legacy_batch(records: List[OperationRecord], gap: timedelta = LEGACY_BATCH_GAP) -> List[OperationRecord]:
        def is_candidate(r: OperationRecord) -> bool:
            return not r.run_id and r.is_reversible

        cursor = len(records) - 1
        while cursor >= 0 and not is_candidate(records[cursor]): cursor -= 1
        batch: List[OperationRecord] = []
        previous: Optional[datetime] = None
        while cursor >= 0 and is_candidate(records[cursor]):
            stamp = records[cursor].parsed_time
            if stamp is None or (previous is not None and abs(previous - stamp) > gap): break
            batch.append(records[cursor])
            previous, cursor = stamp, cursor - 1
        batch.reverse()
        return batch

    @staticmethod
    def run_directory(records: List[OperationRecord], run_id: str) -> Optional[Path]:
        for r in records:
            if r.run_id == run_id and r.action == Action.RUN_START and r.source: return Path(r.source)
        return None

    def undo(self, target_run_id: Optional[str] = None, dry_run: bool = False, remove_empty_dirs: bool = False) -> UndoResult:
        records = self.log.read_all()
        target = target_run_id or self.find_latest_real_run_id(records)
        if target: ops = [r for r in records if r.run_id == target and r.is_reversible]
        else: ops = self.find_legacy_batch(records)

        if not target and not ops:
            logging.info("No previous run found to undo.")
            return UndoResult(None, None, message="No previous run found to undo.", dry_run=dry_run)
        effective = target or LEGACY_BATCH_ID
        undo_run_id = generate_run_id()
        if not ops:
            logging.info(f"Nothing to undo for {effective}.")
            return UndoResult(effective, undo_run_id, message="No successful move/group operations to undo.", dry_run=dry_run)

        logging.info(f"--- Starting undo{' dry-run' if dry_run else ''} of {effective} ({len(ops)} operations) ---")
        mover = FileMover(self.log, undo_run_id, dry_run)
        result = UndoResult(effective, undo_run_id, dry_run=dry_run)
        self.log.append(undo_run_id, Action.UNDO_START, Status.SUCCESS, dry_run=dry_run, target_run_id=effective,
                        message=f"Undo dry-run started for {effective}." if dry_run else f"Undo started for {effective}.")
        emptied: List[Path] = []
        try:
            for op in reversed(ops):
                current, original = Path(op.destination), Path(op.source)
                if not os.path.lexists(current):
                    logging.warning(f"SKIPPED: '{current}' no longer exists, cannot restore it.")
                    result.preview.append(mover.record(Action.UNDO, Status.SKIPPED, current, original, "Destination file no longer exists. Skipped undo for this item."))
                    result.error_count += 1
                    continue
                if not mover.ensure_dir(original.parent):
                    result.preview.append(mover.record(Action.UNDO, Status.ERROR, current, original, f"Could not recreate folder '{original.parent}'."))
                    result.error_count += 1
                    continue
                outcome = mover.move(current, original, Action.UNDO)
                result.preview.append(outcome)
                if outcome.status in (Status.SUCCESS, Status.PREVIEW): result.undone_count += 1; emptied.append(current.parent)
                elif outcome.status == Status.ERROR: result.error_count += 1
        finally:
            self.log.append(undo_run_id, Action.UNDO_END, Status.SUCCESS, dry_run=dry_run, target_run_id=effective,
                            message='Undo dry-run completed.' if dry_run else 'Undo completed.')

        if remove_empty_dirs and not dry_run:
            root = self.run_directory(records, target) if target else None
            if root: self.prune_empty_dirs(emptied, root)
            else: logging.info("Run folder unknown, leaving empty folders in place.")
        result.message = f"Undo complete. undone: {result.undone_count}, errors: {result.error_count}"
        logging.info(result.message)
        return result

    @staticmethod
    def prune_empty_dirs(folders: Iterable[Path], root: Path) -> List[Path]:
        """Remove now-empty folders strictly inside root, deepest first, walking up until a non-empty one."""
        removed: List[Path] = []
        for folder in sorted(set(folders), key=lambda p: len(p.parts), reverse=True):
            current = folder
            while is_strict_subfolder(current, root):
                try:
                    if any(current.iterdir()): break
                    current.rmdir()
                except OSError as e:
                    logging.debug(f"Keeping '{current}': {e}")
                    break
                logging.info(f"Removed empty directory: {current}")
                removed.append(current)
                current = current.parent
        return removed

# --- Public Entry Points ---

def organize(directory: Union[str, Path], options: Optional[OrganizeOptions] = None, config: Optional[Config] = None) -> OrganizeResult:
    cfg = config or Config.from_environment()
    return Organizer(cfg, options).run(directory)

def undo_last_run(options: Optional[UndoOptions] = None, config: Optional[Config] = None) -> UndoResult:
    cfg = config or Config.from_environment()
    options = options or UndoOptions()
    return UndoEngine(OperationLog(cfg.get_path('LOG_FILE'))).undo(options.run_id, options.dry_run, options.remove_empty_dirs)

def read_logs(limit: int = 200, config: Optional[Config] = None) -> List[OperationRecord]:
    cfg = config or Config.from_environment()
    return OperationLog(cfg.get_path('LOG_FILE')).read_recent(limit)
