# /pack_watch.py
"""
Pack Watch (no symlinks)
- Installs a local npm package into the current project as a real copy
  (npm pack + npm install of the tarball), instead of `npm link`.
- Watches every top-level file/folder of the package and mirrors changes
  into node_modules/<name>: add/change -> copy, unlink -> delete,
  addDir -> mkdir (whole parent chain), unlinkDir -> rm -r.
- New top-level files/folders are copied first, then watched recursively.
- Hidden entries and the top-level node_modules are never watched.
- Optional: skip top-level entries listed in .npmignore (or .gitignore).
- One-way and best-effort: any copy/remove failure stops the tool.
  Deleting something already gone and creating a folder that already
  exists are not failures.

Usage
  pip install watchdog pathspec colorama
  pack-watch --dir ../my-lib
  pack-watch --dir ~/src/my-lib --use-ignore-file --verbose
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import functools
import json
import logging
import os
import re
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from colorama import just_fix_windows_console
from pathspec import PathSpec
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

__version__ = "0.4.0"

APP_NAME = "pack-watch"

IGNORE_FILE_NAMES = (".npmignore", ".gitignore")

DEFAULT_IGNORE_PATTERNS = [
    # Hidden files and folders, at any depth
    ".*",
    # Installed dependencies of the package itself (top level only)
    "/node_modules",
]

MIRRORED_EVENT_TYPES = frozenset(
    {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED}
)


# -------------------------
# Errors
# -------------------------

class PackWatchError(Exception):
    """Base class for errors reported by pack-watch."""


class SetupError(PackWatchError):
    """Raised before any watcher starts (bad directory, manifest or ignore file)."""


class InstallError(PackWatchError):
    """Raised when the package could not be installed into the destination."""


class WatcherError(PackWatchError):
    """Raised when a file system watcher stops without being asked to."""


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "DELETE": Ansi.ORANGE,
    "RMDIR": Ansi.ORANGE,
    "MKDIR": Ansi.LIGHT_BROWN,
    "WATCH": Ansi.LIGHT_BROWN,
    "INSTALL": Ansi.GREEN,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    """Prefixes every line with the tool name; colours actions and paths on a TTY."""

    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if record.levelno <= logging.DEBUG:
            base = f"VERBOSE: {base}"
        base = f"{APP_NAME}: {base}"
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def setup_logger(verbose: bool = False) -> logging.Logger:
    logger = logging.getLogger("pack_watch")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    just_fix_windows_console()

    out = logging.StreamHandler(sys.stdout)
    out.addFilter(lambda record: record.levelno < logging.WARNING)
    out.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt="%(message)s"))

    err = logging.StreamHandler(sys.stderr)
    err.setLevel(logging.WARNING)
    err.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stderr), fmt="%(message)s"))

    logger.addHandler(out)
    logger.addHandler(err)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: bool = False,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = is_dir
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    source_dir: Path
    install_dir: Path
    package_name: str
    verbose: bool = False
    use_ignore_file: bool = False
    self_link: bool = False
    install: bool = True

    @property
    def dest_dir(self) -> Path:
        return self.install_dir / "node_modules" / self.package_name


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Install a local npm package as a copy and keep it in sync with its source directory.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("-d", "--dir", type=str, default=None, help="Package directory to install and watch.")
    p.add_argument(
        "-m",
        "--module",
        type=str,
        default=None,
        help='Name to install under node_modules (default: "name" from package.json).',
    )
    p.add_argument(
        "-i",
        "--use-ignore-file",
        action="store_true",
        help="Don't watch top-level entries listed in the package's .npmignore/.gitignore.",
    )
    p.add_argument(
        "-s",
        "--self-link",
        action="store_true",
        help="Install the package into its own node_modules instead of the current directory's.",
    )
    p.add_argument(
        "--no-install",
        dest="install",
        action="store_false",
        help="Skip the install step; the destination must already exist.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Log more information.")
    return p


def parse_args(argv: list[str]) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def read_manifest(package_dir: Path) -> dict:
    manifest_path = package_dir / "package.json"
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise SetupError(f'directory "{package_dir}" does not contain a "package.json" file') from None
    except (OSError, ValueError) as e:
        raise SetupError(f'could not read "{manifest_path}": {e}') from e
    if not isinstance(manifest, dict):
        raise SetupError(f'"{manifest_path}" does not contain a JSON object')
    return manifest


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def build_config(args: argparse.Namespace, cwd: Optional[Path] = None) -> AppConfig:
    cwd = (cwd or Path.cwd()).resolve()
    source = (cwd / Path(args.dir).expanduser()).resolve()
    if not source.is_dir():
        raise SetupError(f'directory "{source}" does not exist or is not a folder')

    manifest = read_manifest(source)
    name = args.module or manifest.get("name")
    if not name:
        raise SetupError('Module "package.json" file does not contain a "name"')

    cfg = AppConfig(
        source_dir=source,
        install_dir=source if args.self_link else cwd,
        package_name=name,
        verbose=bool(args.verbose),
        use_ignore_file=bool(args.use_ignore_file),
        self_link=bool(args.self_link),
        install=bool(args.install),
    )
    validate_config(cfg)
    return cfg


def validate_config(cfg: AppConfig) -> None:
    if cfg.dest_dir.resolve() == cfg.source_dir:
        raise SetupError("Package folder and install destination must be different.")
    if _is_subpath(cfg.source_dir, cfg.dest_dir):
        raise SetupError("Package folder must NOT be inside the install destination (would cause loops).")
    if not cfg.install and not cfg.dest_dir.is_dir():
        raise SetupError(f'install destination "{cfg.dest_dir}" does not exist (drop --no-install?)')


# -------------------------
# Ignore rules
# -------------------------

_IGNORE_TAIL_RE = re.compile(r"/\*?$")


@dataclass(frozen=True)
class IgnoreEntry:
    path: Path
    stat: os.stat_result = field(compare=False, repr=False)


def parse_ignore_top_layer(text: str, source_root: Path) -> list[Path]:
    """Return the absolute candidate paths of the top-level entries in an ignore file.

    A trailing ``/`` or ``/*`` is stripped first; blank lines and entries that
    still contain a ``/`` (nested paths) are skipped.
    """
    candidates = []
    for line in text.splitlines():
        entry = _IGNORE_TAIL_RE.sub("", line.strip())
        if not entry or "/" in entry:
            continue
        candidates.append(Path(os.path.normpath(source_root / entry)))
    return candidates


def _find_ignore_file(source_root: Path) -> Path:
    preferred, fallback = (source_root / name for name in IGNORE_FILE_NAMES)
    if os.access(preferred, os.R_OK):
        return preferred
    return fallback


async def _probe_ignore_candidate(path: Path, logger: logging.Logger) -> Optional[IgnoreEntry]:
    logger.debug("checking if ignore file path exists: %s", path)
    if not await asyncio.to_thread(os.access, path, os.R_OK):
        logger.debug("ignore file path does not exist: %s", path)
        return None
    st = await asyncio.to_thread(os.lstat, path)
    logger.debug("found top level path to exclude from watching: %s", path)
    return IgnoreEntry(path=path, stat=st)


async def load_ignored_top_paths(source_root: Path, logger: logging.Logger) -> frozenset[IgnoreEntry]:
    ignore_file = await asyncio.to_thread(_find_ignore_file, source_root)
    try:
        text = await asyncio.to_thread(ignore_file.read_text, encoding="utf-8")
    except FileNotFoundError:
        logger.debug("no %s or %s in %s", *IGNORE_FILE_NAMES, source_root)
        return frozenset()
    except (OSError, UnicodeDecodeError) as e:
        raise SetupError(f"could not read ignore file {ignore_file}: {e}") from e

    candidates = parse_ignore_top_layer(text, source_root)
    found = await asyncio.gather(*(_probe_ignore_candidate(c, logger) for c in candidates))
    return frozenset(entry for entry in found if entry is not None)


class IgnoreMatcher:
    def __init__(
        self,
        source_root: Path,
        patterns: Iterable[str] = DEFAULT_IGNORE_PATTERNS,
        ignored_top: Iterable[IgnoreEntry] = (),
    ):
        self.source_root = source_root
        self.spec = PathSpec.from_lines("gitwildmatch", patterns)
        self.ignored_top = frozenset(entry.path for entry in ignored_top)

    def is_ignored(self, path: Path, is_dir: bool = False) -> bool:
        try:
            rel = Path(path).relative_to(self.source_root)
        except ValueError:
            return True
        if not rel.parts:
            return False
        if self.source_root / rel.parts[0] in self.ignored_top:
            return True
        rel_posix = rel.as_posix()
        if is_dir:
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


# -------------------------
# Path mapping
# -------------------------

@dataclass(frozen=True)
class PathMapper:
    source_root: Path
    dest_root: Path

    def to_destination(self, source_path: Path) -> Path:
        return self.dest_root / Path(source_path).relative_to(self.source_root)

    def relative(self, source_path: Path) -> Path:
        return Path(source_path).relative_to(self.source_root)


# -------------------------
# Filesystem mirror ops
# -------------------------

def _list_tree(root: Path, is_ignored: Callable[[Path, bool], bool]) -> tuple[list[Path], list[Path]]:
    dirs, files = [], []
    for current, dirnames, filenames in os.walk(root):
        here = Path(current)
        kept = []
        for name in sorted(dirnames):
            child = here / name
            if child.is_symlink() or is_ignored(child, True):
                continue
            kept.append(name)
            dirs.append(child)
        dirnames[:] = kept
        for name in sorted(filenames):
            child = here / name
            if child.is_symlink() or is_ignored(child, False):
                continue
            files.append(child)
    return dirs, files


class MirrorOps:
    """Idempotent filesystem primitives used to update the destination tree.

    ``pending`` maps a directory path to the task currently creating it, so
    concurrent requests for the same directory share one ``mkdir``. Entries
    are dropped as soon as the task settles, whatever the outcome.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.pending: dict[Path, asyncio.Task] = {}

    def ensure_directory(self, path: Path) -> Awaitable[None]:
        path = Path(path)
        task = self.pending.get(path)
        if task is not None:
            self.logger.debug("found directory creation for %s in progress", path)
            return task
        task = asyncio.get_running_loop().create_task(self._create_directory_chain(path))
        self.pending[path] = task
        task.add_done_callback(functools.partial(self._settle, path))
        return task

    def _settle(self, path: Path, task: asyncio.Task) -> None:
        if self.pending.get(path) is task:
            del self.pending[path]

    async def _create_directory_chain(self, path: Path) -> None:
        if await asyncio.to_thread(path.is_dir):
            self.logger.debug("directory already exists: %s", path)
            return
        if path.parent != path:
            await self.ensure_directory(path.parent)
        self.logger.debug("making directory %s", path)
        try:
            await asyncio.to_thread(os.mkdir, path)
        except FileExistsError:
            self.logger.debug("directory already exists: %s", path)

    async def copy_file(self, src: Path, dst: Path) -> None:
        src, dst = Path(src), Path(dst)
        if not src.is_absolute() or not dst.is_absolute():
            raise ValueError(f"copy_file needs absolute paths, got {src} -> {dst}")
        self.logger.debug("reading file to copy: %s", src)
        contents = await asyncio.to_thread(src.read_bytes)
        await self.ensure_directory(dst.parent)
        await asyncio.to_thread(dst.write_bytes, contents)
        self.logger.debug("wrote copied file: %s", dst)

    async def remove_file(self, dst: Path) -> bool:
        try:
            await asyncio.to_thread(os.unlink, dst)
        except FileNotFoundError:
            self.logger.debug("file already absent: %s", dst)
            return False
        return True

    async def remove_tree(self, dst: Path) -> None:
        self.logger.debug("removing directory %s", dst)
        await asyncio.to_thread(shutil.rmtree, dst)

    async def mirror_tree(
        self,
        src: Path,
        dst: Path,
        is_ignored: Callable[[Path, bool], bool],
    ) -> int:
        """Create ``dst`` and copy everything already inside ``src``; returns the file count."""
        await self.ensure_directory(dst)
        dirs, files = await asyncio.to_thread(_list_tree, src, is_ignored)
        await asyncio.gather(*(self.ensure_directory(dst / d.relative_to(src)) for d in dirs))
        await asyncio.gather(*(self.copy_file(f, dst / f.relative_to(src)) for f in files))
        return len(files)


# -------------------------
# Change propagation
# -------------------------

class Change(enum.Enum):
    ADD = "add"
    CHANGE = "change"
    UNLINK = "unlink"
    ADD_DIR = "addDir"
    UNLINK_DIR = "unlinkDir"


REMOVALS = frozenset({Change.UNLINK, Change.UNLINK_DIR})


def translate_event(event: FileSystemEvent, covers: Callable[[Path], bool]) -> list[tuple[Change, Path]]:
    """Turn a watchdog event into the changes to mirror.

    A move is a removal of the old path plus an addition of the new one, each
    only when ``covers`` accepts it. Watchdog's synthetic sub-moves (emitted
    for the children of a moved folder) only add: removing the parent folder
    already took their old copies.
    """
    src = Path(event.src_path)
    if event.event_type == EVENT_TYPE_CREATED:
        return [(Change.ADD_DIR if event.is_directory else Change.ADD, src)]
    if event.event_type == EVENT_TYPE_MODIFIED:
        return [] if event.is_directory else [(Change.CHANGE, src)]
    if event.event_type == EVENT_TYPE_DELETED:
        return [(Change.UNLINK_DIR if event.is_directory else Change.UNLINK, src)]
    if event.event_type == EVENT_TYPE_MOVED:
        dest = Path(event.dest_path)
        changes = []
        if covers(src) and not event.is_synthetic:
            changes.append((Change.UNLINK_DIR if event.is_directory else Change.UNLINK, src))
        if covers(dest):
            changes.append((Change.ADD_DIR if event.is_directory else Change.ADD, dest))
        return changes
    return []


class ChangePropagator:
    """Applies add/change/unlink/addDir/unlinkDir to the destination tree."""

    def __init__(self, mapper: PathMapper, ops: MirrorOps, logger: logging.Logger):
        self.mapper = mapper
        self.ops = ops
        self.logger = logger
        self._handlers: dict[Change, Callable[[Path], Awaitable[None]]] = {
            Change.ADD: self.copy_changed_file,
            Change.CHANGE: self.copy_changed_file,
            Change.UNLINK: self.remove_deleted_file,
            Change.ADD_DIR: self.make_added_directory,
            Change.UNLINK_DIR: self.remove_deleted_dir,
        }

    async def handle(self, change: Change, path: Path) -> None:
        await self._handlers[change](path)

    async def copy_changed_file(self, path: Path) -> None:
        self.logger.debug("file changed/added in repo -> updating in package: %s", path)
        try:
            await self.ops.copy_file(path, self.mapper.to_destination(path))
        except Exception:
            self.logger.error("Error copying file: %s", path)
            raise
        rel = self.mapper.relative(path)
        log_action(self.logger, "COPY", f"updated file in package: {rel}", path=rel)

    async def remove_deleted_file(self, path: Path) -> None:
        self.logger.debug("removed file in repo -> removing in package: %s", path)
        try:
            await self.ops.remove_file(self.mapper.to_destination(path))
        except Exception:
            self.logger.error("Error removing file: %s", path)
            raise
        rel = self.mapper.relative(path)
        log_action(self.logger, "DELETE", f"file deleted in repo, removed in package: {rel}", path=rel)

    async def make_added_directory(self, path: Path) -> None:
        target = self.mapper.to_destination(path)
        self.logger.debug("added directory in repo -> adding in package: %s", path)
        try:
            await self.ops.ensure_directory(target)
        except Exception:
            self.logger.error("Error adding newly added directory to package: %s", target)
            raise
        rel = self.mapper.relative(path)
        log_action(self.logger, "MKDIR", f"directory added in repo, added in package: {rel}", path=rel, is_dir=True)

    async def remove_deleted_dir(self, path: Path) -> None:
        target = self.mapper.to_destination(path)
        self.logger.debug("removed directory in repo -> removing in package: %s", path)
        try:
            await self.ops.remove_tree(target)
        except Exception:
            self.logger.error("Error removing directory that was removed in source repo: %s", target)
            raise
        rel = self.mapper.relative(path)
        log_action(
            self.logger,
            "RMDIR",
            f"directory deleted in repo, deleted matching directory in package: {rel}",
            path=rel,
            is_dir=True,
        )


# -------------------------
# Watch registry
# -------------------------

@dataclass(eq=False)
class WatchRoot:
    path: Path
    is_dir: bool
    growth: bool = False
    retired: bool = False
    watches: list[tuple[ObservedWatch, FileSystemEventHandler]] = field(default_factory=list)


EventSink = Callable[[WatchRoot, FileSystemEvent], None]


def _event_paths(event: FileSystemEvent) -> list[Path]:
    paths = [Path(event.src_path)]
    if event.event_type == EVENT_TYPE_MOVED:
        paths.append(Path(event.dest_path))
    return paths


class ForwardingHandler(FileSystemEventHandler):
    """Runs on a watchdog thread; passes accepted events to the asyncio loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        accept: Callable[[FileSystemEvent], bool],
        deliver: Callable[[FileSystemEvent], None],
    ):
        super().__init__()
        self.loop = loop
        self.accept = accept
        self.deliver = deliver

    def dispatch(self, event: FileSystemEvent) -> None:
        if event.event_type not in MIRRORED_EVENT_TYPES:
            return
        if self.accept(event):
            self.loop.call_soon_threadsafe(self.deliver, event)


class WatchRegistry:
    """Owns the observer and at most one WatchRoot per watched path.

    A top-level entry gets an *entry* handler on the source root
    (non-recursive, events for the entry itself) and, for folders, a
    *subtree* handler on the folder (recursive, events strictly below it).
    """

    def __init__(
        self,
        source_root: Path,
        matcher: IgnoreMatcher,
        logger: logging.Logger,
        observer: Optional[BaseObserver] = None,
    ):
        self.source_root = source_root
        self.matcher = matcher
        self.logger = logger
        self.observer = observer if observer is not None else Observer()
        self.roots: dict[Path, WatchRoot] = {}

    def start(self) -> None:
        self.observer.start()

    def stop(self) -> None:
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=10)

    def is_watching(self, path: Path) -> bool:
        return Path(path) in self.roots

    def covers(self, root: WatchRoot, path: Path) -> bool:
        if path != root.path and not (root.is_dir and root.path in path.parents):
            return False
        return not self.matcher.is_ignored(path)

    def _owns_entry(self, root: WatchRoot, event: FileSystemEvent) -> bool:
        return root.path in _event_paths(event)

    def _owns_subtree(self, root: WatchRoot, event: FileSystemEvent) -> bool:
        return any(
            root.path in p.parents and not self.matcher.is_ignored(p, event.is_directory)
            for p in _event_paths(event)
        )

    def _is_new_top_level(self, event: FileSystemEvent) -> bool:
        if event.event_type == EVENT_TYPE_CREATED:
            path = Path(event.src_path)
        elif event.event_type == EVENT_TYPE_MOVED:
            path = Path(event.dest_path)
        else:
            return False
        return path.parent == self.source_root and not self.matcher.is_ignored(path, event.is_directory)

    async def create_watcher(self, path: Path, sink: EventSink, is_dir: bool) -> Optional[WatchRoot]:
        path = Path(path)
        if path in self.roots:
            self.logger.error("already watching path: %s", path)
            return None

        root = WatchRoot(path=path, is_dir=is_dir)
        schedules = [(self.source_root, False, functools.partial(self._owns_entry, root))]
        if is_dir:
            schedules.append((path, True, functools.partial(self._owns_subtree, root)))
        await self._register(root, sink, schedules)
        return root

    async def watch_top_level(self, sink: EventSink) -> Optional[WatchRoot]:
        if self.source_root in self.roots:
            self.logger.error("already watching path: %s", self.source_root)
            return None
        root = WatchRoot(path=self.source_root, is_dir=True, growth=True)
        await self._register(root, sink, [(self.source_root, False, self._is_new_top_level)])
        return root

    async def _register(self, root: WatchRoot, sink: EventSink, schedules) -> None:
        loop = asyncio.get_running_loop()
        self.roots[root.path] = root
        try:
            for watch_path, recursive, accept in schedules:
                handler = ForwardingHandler(loop, accept, functools.partial(sink, root))
                watch = await asyncio.to_thread(
                    self.observer.schedule, handler, str(watch_path), recursive=recursive
                )
                root.watches.append((watch, handler))
        except Exception:
            self.logger.error("Error encountered watching path %s", root.path)
            await self.release(root.path)
            raise

    def stopped_roots(self) -> list[WatchRoot]:
        """Roots with an emitter thread that died without being stopped.

        An emitter stops itself when its folder is removed; that is not a
        failure. One that exits on an exception never sets its stop event.
        """
        emitters = {emitter.watch: emitter for emitter in list(self.observer.emitters)}
        stopped = []
        for root in list(self.roots.values()):
            for watch, _handler in root.watches:
                emitter = emitters.get(watch)
                if emitter is None or emitter.ident is None:
                    continue
                if not emitter.is_alive() and not emitter.stopped_event.is_set():
                    stopped.append(root)
                    break
        return stopped

    async def release(self, path: Path) -> None:
        """Stop watching ``path``; events still queued for it are dropped."""
        root = self.roots.pop(Path(path), None)
        if root is None:
            return
        root.retired = True
        await asyncio.to_thread(self._unschedule, root)
        self.logger.debug("stopped watching %s", root.path)

    def _unschedule(self, root: WatchRoot) -> None:
        for watch, handler in root.watches:
            if watch.is_recursive:
                self.observer.unschedule(watch)
            else:
                # the non-recursive watch on the source root is shared
                self.observer.remove_handler_for_watch(handler, watch)
        root.watches.clear()


# -------------------------
# Service
# -------------------------

class PackWatcher:
    """Keeps ``dest_root`` in step with ``source_root`` until a fatal error.

    Events from every watcher go through one queue and are applied in the
    order they were delivered. The first failure ends ``run()``.
    """

    def __init__(
        self,
        source_root: Path,
        dest_root: Path,
        logger: logging.Logger,
        use_ignore_file: bool = False,
        observer: Optional[BaseObserver] = None,
        health_interval: float = 1.0,
    ):
        self.source_root = Path(source_root)
        self.dest_root = Path(dest_root)
        self.logger = logger
        self.use_ignore_file = use_ignore_file
        self.matcher = IgnoreMatcher(self.source_root)
        self.mapper = PathMapper(self.source_root, self.dest_root)
        self.ops = MirrorOps(logger)
        self.propagator = ChangePropagator(self.mapper, self.ops, logger)
        self.registry = WatchRegistry(self.source_root, self.matcher, logger, observer=observer)
        self.ignored: frozenset[IgnoreEntry] = frozenset()
        self.queue: Optional[asyncio.Queue] = None
        self.failure: Optional[asyncio.Future] = None
        self._consumer: Optional[asyncio.Task] = None
        self._monitor: Optional[asyncio.Task] = None
        self.health_interval = health_interval

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self.queue = asyncio.Queue()
        self.failure = loop.create_future()

        if self.use_ignore_file:
            self.logger.debug(
                "ignore file will be used to find additional top-level files/directories to exclude from watching"
            )
            self.ignored = await load_ignored_top_paths(self.source_root, self.logger)
            self.matcher.ignored_top = frozenset(entry.path for entry in self.ignored)

        self.registry.start()
        self._consumer = loop.create_task(self._consume())
        self._consumer.add_done_callback(self._on_task_done)
        self._monitor = loop.create_task(self._watch_health())
        self._monitor.add_done_callback(self._on_task_done)

        await self.registry.watch_top_level(self.deliver)
        self.logger.debug("watching root directory for added files/directories")

        self.logger.debug("finding top level files and directories in %s", self.source_root)
        entries = await asyncio.to_thread(self._top_level_entries)
        await asyncio.gather(*(self._watch_existing(path, is_dir) for path, is_dir in entries))
        self.logger.info("Created watchers for source repo")

    async def run(self) -> None:
        try:
            await self.start()
            await self.failure
        finally:
            await self.close()

    async def close(self) -> None:
        for task in (self._consumer, self._monitor):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.to_thread(self.registry.stop)

    async def wait_idle(self) -> None:
        await self.queue.join()

    def fail(self, exc: BaseException) -> None:
        if self.failure is None or self.failure.done():
            self.logger.error("error after watching stopped: %s", exc)
            return
        self.failure.set_exception(exc)

    def deliver(self, root: WatchRoot, event: FileSystemEvent) -> None:
        if root.retired:
            return
        self.queue.put_nowait((root, event))

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.fail(exc)

    async def _watch_health(self) -> None:
        """Turn a watchdog emitter thread that died into a fatal error."""
        while not self.failure.done():
            await asyncio.sleep(self.health_interval)
            for root in self.registry.stopped_roots():
                self.logger.error("Watcher for path %s stopped unexpectedly", root.path)
                await self.registry.release(root.path)
                self.fail(WatcherError(f"watcher for {root.path} stopped unexpectedly"))

    def _top_level_entries(self) -> list[tuple[Path, bool]]:
        entries = []
        for path in sorted(self.source_root.iterdir()):
            is_dir = path.is_dir()
            if self.matcher.is_ignored(path, is_dir):
                self.logger.debug("will not create watcher for path %s", path)
                continue
            if path.is_symlink():
                self.logger.debug("skipping symlink %s", path)
                continue
            entries.append((path, is_dir))
        return entries

    async def _watch_existing(self, path: Path, is_dir: bool) -> None:
        self.logger.debug("setting up watcher for path: %s", path)
        if await self.registry.create_watcher(path, self.deliver, is_dir=is_dir) is not None:
            self.logger.debug('Scanned "%s", watching for changes', path)

    async def _consume(self) -> None:
        while True:
            root, event = await self.queue.get()
            try:
                await self._process(root, event)
            finally:
                self.queue.task_done()

    async def _process(self, root: WatchRoot, event: FileSystemEvent) -> None:
        if root.retired:
            self.logger.debug("dropping %s event for released watcher %s", event.event_type, root.path)
            return
        if root.growth:
            await self._on_top_level_event(event)
            return
        for change, path in translate_event(event, functools.partial(self.registry.covers, root)):
            await self.propagator.handle(change, path)
            if path == root.path and change in REMOVALS:
                await self.registry.release(path)

    async def _on_top_level_event(self, event: FileSystemEvent) -> None:
        path = Path(event.dest_path if event.event_type == EVENT_TYPE_MOVED else event.src_path)
        if await asyncio.to_thread(path.is_symlink):
            self.logger.debug("skipping symlink %s", path)
            return
        if self.registry.is_watching(path):
            # picked up by the startup scan before this event arrived
            self.logger.debug("top level path already watched, copying only: %s", path)
            await self._mirror_entry(path, event.is_directory)
            return
        await self.promote(path, event.is_directory)

    async def promote(self, path: Path, is_dir: bool) -> Optional[WatchRoot]:
        """Mirror a new top-level entry, watch it, then mirror it once more.

        Writes that land between the first copy and the watch going live
        produce no event, so the second pass is what picks them up.
        """
        await self._mirror_entry(path, is_dir)

        root = await self.registry.create_watcher(path, self.deliver, is_dir=is_dir)
        if root is None:
            return None
        rel = self.mapper.relative(path)
        kind = "directory" if is_dir else "file"
        log_action(self.logger, "WATCH", f"added watcher for new top level {kind}: {rel}", path=rel, is_dir=is_dir)
        await self._catch_up(root)
        return root

    async def _mirror_entry(self, path: Path, is_dir: bool) -> None:
        if not is_dir:
            await self.propagator.copy_changed_file(path)
            return
        rel = self.mapper.relative(path)
        copied = await self.ops.mirror_tree(path, self.mapper.to_destination(path), self.matcher.is_ignored)
        log_action(
            self.logger,
            "MKDIR",
            f"directory added in repo, added in package: {rel} ({copied} files)",
            path=rel,
            is_dir=True,
        )

    async def _catch_up(self, root: WatchRoot) -> None:
        if not await asyncio.to_thread(root.path.exists):
            # gone before its watch started, so no event will report it
            change = Change.UNLINK_DIR if root.is_dir else Change.UNLINK
            await self.propagator.handle(change, root.path)
            await self.registry.release(root.path)
            return
        target = self.mapper.to_destination(root.path)
        if root.is_dir:
            copied = await self.ops.mirror_tree(root.path, target, self.matcher.is_ignored)
        else:
            await self.ops.copy_file(root.path, target)
            copied = 1
        self.logger.debug("re-copied %d files of %s after its watcher started", copied, root.path)


# -------------------------
# Install
# -------------------------

async def _run_npm(args: list[str], cwd: Path, logger: logging.Logger) -> str:
    npm = shutil.which("npm")
    if npm is None:
        raise InstallError('"npm" was not found on PATH')
    logger.debug("running npm %s (in %s)", " ".join(args), cwd)
    proc = await asyncio.create_subprocess_exec(
        npm,
        *args,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    out, err = await proc.communicate()
    if proc.returncode != 0:
        detail = err.decode("utf-8", errors="replace").strip()
        raise InstallError(f"npm {args[0]} exited with code {proc.returncode}: {detail}")
    return out.decode("utf-8", errors="replace")


async def install_package(cfg: AppConfig, logger: logging.Logger) -> None:
    log_action(logger, "INSTALL", f'installing "{cfg.source_dir}" as node module', path=cfg.source_dir, is_dir=True)

    if cfg.self_link:
        # npm refuses to install a package into itself, copy the tree instead
        ops = MirrorOps(logger)
        copied = await ops.mirror_tree(cfg.source_dir, cfg.dest_dir, IgnoreMatcher(cfg.source_dir).is_ignored)
        logger.debug("copied %d files into %s", copied, cfg.dest_dir)
    else:
        manifest = read_manifest(cfg.source_dir)
        if not manifest.get("name") or not manifest.get("version"):
            raise InstallError("Local npm project repo must specify version and name in package.json")

        out = await _run_npm(["pack", str(cfg.source_dir)], cfg.install_dir, logger)
        lines = [line.strip() for line in out.splitlines() if line.strip()]
        if not lines:
            raise InstallError("npm pack did not report a tarball")
        tarball = cfg.install_dir / lines[-1]
        try:
            await _run_npm(["install", "--no-save", str(tarball)], cfg.install_dir, logger)
        finally:
            tarball.unlink(missing_ok=True)

    if not cfg.dest_dir.is_dir():
        raise InstallError(f'install finished but "{cfg.dest_dir}" does not exist (is --module right?)')
    logger.info(
        'installed node_module "%s" successfully, creating watchers for top-level files/folders',
        cfg.package_name,
    )


# -------------------------
# Main
# -------------------------

async def serve(cfg: AppConfig, logger: logging.Logger) -> int:
    if cfg.install:
        try:
            await install_package(cfg, logger)
        except (PackWatchError, OSError) as e:
            logger.error("error installing local package repo from path %s: %s", cfg.source_dir, e)
            return 1

    watcher = PackWatcher(cfg.source_dir, cfg.dest_dir, logger, use_ignore_file=cfg.use_ignore_file)
    try:
        await watcher.run()
    except SetupError as e:
        logger.error("%s", e)
        return 1
    except Exception as e:
        logger.error("%s", e, exc_info=logger.isEnabledFor(logging.DEBUG))
        return 1
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    if not args.dir:
        parser.print_help()
        return 0

    logger = setup_logger(args.verbose)
    try:
        cfg = build_config(args)
    except SetupError as e:
        logger.error("%s", e)
        return 1

    logger.debug("Package: %s", cfg.source_dir)
    logger.debug("Install: %s", cfg.dest_dir)

    try:
        return asyncio.run(serve(cfg, logger))
    except KeyboardInterrupt:
        logger.info("Stopped.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
