"""
Inbox watcher for event files.

This module provides:
- Watchdog-based monitoring of an inbox directory
- Debounced pickup (editors and copy tools write files in several steps)
- Event file parsing: JSON object, JSON array, JSON Lines, YAML
- Moving each file to processed/ or rejected/ once submitted
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml
from watchdog.events import FileCreatedEvent, FileModifiedEvent, FileMovedEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import PipelineHalted, ValidationError
from .pipeline import Pipeline, Rejected, SubmitResult

logger = logging.getLogger(__name__)

PROCESSED_DIR = "processed"
REJECTED_DIR = "rejected"


def load_event_payloads(text: str, *, suffix: str = ".json") -> list[Any]:
    """
    Parse the events in a file.

    ``.yml``/``.yaml`` files may hold one mapping or a list of them. Other
    files are JSON: one object, an array, or one object per line.
    """
    if suffix.lower() in (".yml", ".yaml"):
        data = yaml.safe_load(text)
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    stripped = text.strip()
    if not stripped:
        return []
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        # JSON Lines
        return [json.loads(line) for line in stripped.splitlines() if line.strip()]
    return data if isinstance(data, list) else [data]


@dataclass
class InboxResult:
    """Outcome of processing one inbox file."""

    path: Path
    results: list[SubmitResult] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(r.accepted for r in self.results)


class InboxEventHandler(FileSystemEventHandler):
    """
    Submits event files dropped into an inbox.

    Key behaviors:
    - Filters to .json, .jsonl, .yml and .yaml files in the inbox itself
    - Debounces: a file is picked up once it has been quiet for a second
    - Moves every handled file out of the inbox so it is never read twice
    """

    RELEVANT_EXTENSIONS = {".json", ".jsonl", ".yml", ".yaml"}
    DEBOUNCE_SECONDS = 1.0

    def __init__(
        self,
        inbox: Path,
        pipeline: Pipeline,
        on_result: Callable[[InboxResult], None] | None = None,
    ):
        super().__init__()
        self.inbox = inbox.resolve()
        self.pipeline = pipeline
        self.on_result = on_result

        # path -> time of last filesystem event
        self.pending: dict[str, float] = {}

    def _is_relevant(self, path: str) -> bool:
        p = Path(path)
        if p.name.startswith("."):
            return False
        if p.resolve().parent != self.inbox:
            return False
        return p.suffix.lower() in self.RELEVANT_EXTENSIONS

    def _touch(self, path: str) -> None:
        if self._is_relevant(path):
            self.pending[path] = time.time()

    def on_created(self, event: FileCreatedEvent) -> None:
        if not event.is_directory:
            self._touch(event.src_path)

    def on_modified(self, event: FileModifiedEvent) -> None:
        if not event.is_directory:
            self._touch(event.src_path)

    def on_moved(self, event: FileMovedEvent) -> None:
        # Atomic "write to temp, rename into inbox" producers.
        if not event.is_directory:
            self._touch(event.dest_path)

    def scan(self) -> None:
        """Queue files already in the inbox (left over from a previous run)."""
        for path in sorted(self.inbox.iterdir()):
            if path.is_file():
                self._touch(str(path))

    def flush_pending(self, *, force: bool = False) -> list[InboxResult]:
        """Process files that have passed the debounce window."""
        now = time.time()
        ready = [
            p for p, ts in list(self.pending.items())
            if force or now - ts >= self.DEBOUNCE_SECONDS
        ]
        results = []
        for path_str in sorted(ready):
            del self.pending[path_str]
            path = Path(path_str)
            if not path.exists():
                continue
            result = self.process_file(path)
            results.append(result)
            if self.on_result:
                self.on_result(result)
        return results

    def process_file(self, path: Path) -> InboxResult:
        """Submit every event in ``path`` and move the file out of the inbox."""
        result = InboxResult(path=path)
        try:
            payloads = load_event_payloads(path.read_text(encoding="utf-8"), suffix=path.suffix)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
            result.error = f"cannot parse {path.name}: {e}"
            logger.warning("%s", result.error)
            result.path = self._move(path, REJECTED_DIR)
            return result

        for raw in payloads:
            if not isinstance(raw, dict):
                result.results.append(
                    Rejected(error=ValidationError("payload", "event payload must be an object"))
                )
                continue
            # PipelineHalted propagates: the file stays in the inbox.
            result.results.append(self.pipeline.submit_event(raw))

        result.path = self._move(path, PROCESSED_DIR if result.ok else REJECTED_DIR)
        return result

    def _move(self, path: Path, folder: str) -> Path:
        target_dir = self.inbox / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / path.name
        if target.exists():
            target = target_dir / f"{path.stem}-{int(time.time() * 1000)}{path.suffix}"
        shutil.move(str(path), str(target))
        return target


def watch_inbox(
    inbox: Path,
    pipeline: Pipeline,
    on_result: Callable[[InboxResult], None] | None = None,
) -> tuple[Observer, InboxEventHandler]:
    """
    Start watching an inbox directory.

    Returns:
        Tuple of (observer, handler) - caller should call observer.stop() to stop watching
    """
    inbox.mkdir(parents=True, exist_ok=True)
    handler = InboxEventHandler(inbox=inbox, pipeline=pipeline, on_result=on_result)
    handler.scan()

    observer = Observer()
    observer.schedule(handler, str(inbox), recursive=False)
    observer.start()

    return observer, handler


def run_watch_loop(
    inbox: Path,
    pipeline: Pipeline,
    on_result: Callable[[InboxResult], None] | None = None,
) -> None:
    """
    Run the watch loop until interrupted or the pipeline halts.

    The digest scheduler runs in the background for the duration.
    """
    observer, handler = watch_inbox(inbox, pipeline, on_result=on_result)
    pipeline.start_digest()

    try:
        while not pipeline.halted:
            time.sleep(0.5)
            handler.flush_pending()
    except PipelineHalted:
        logger.critical("Stopping inbox watcher: pipeline halted")
    finally:
        observer.stop()
        observer.join()

    if pipeline.halted:
        raise PipelineHalted("pipeline halted after ledger write fault")

