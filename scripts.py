import os
import subprocess
import sys
import time
from pathlib import Path

from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileSystemEventHandler
from watchdog.observers import Observer

WATCH_DIRS = [Path("src/docseq"), Path("tests")]
WATCH_SUFFIXES = [".py"]


class Watcher(FileSystemEventHandler):
    """
    Re-runs the test-suite when a python source of the package or of the
    tests changes.
    """

    def __init__(self, pattern: str):
        super().__init__()
        self.pattern = pattern

    def on_modified(self, event: DirModifiedEvent | FileModifiedEvent):
        match event:
            case FileModifiedEvent(src_path=filepath):
                filepath = Path(filepath).resolve().relative_to(Path.cwd())
                if not any(filepath.is_relative_to(wdir) for wdir in WATCH_DIRS):
                    return
                if filepath.suffix not in WATCH_SUFFIXES:
                    return
            case _:
                return

        run_tests(self.pattern)


def run_tests(pattern: str = "test_*.py") -> int:
    """
    Runs the unit tests (in-memory mongo, no server needed).
    """
    os.system("clear && printf '\\e[3J'")
    return subprocess.call(
        [sys.executable, "-m", "unittest", "discover", "-s", "tests", "-p", pattern]
    )


def run_watch(pattern: str = "test_*.py"):
    """
    Run the unit tests matching ``pattern`` every time a file changes.
    """
    observer = Observer()
    observer.schedule(Watcher(pattern), path=".", recursive=True)
    observer.start()

    try:
        run_tests(pattern)
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        observer.stop()
    observer.join()


if __name__ == "__main__":
    run_watch(*sys.argv[1:2])
