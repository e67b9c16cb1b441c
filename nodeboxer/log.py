from typing import Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeElapsedColumn,
    TransferSpeedColumn,
)


# =========================
# GLOBALS
# =========================
console = Console(stderr=True)
LOG_COLOR = {
    "info": "cyan",
    "warning": "yellow",
    "error": "red",
    "success": "green",
    "step": "magenta",
    "run": "blue",
}


def log_step(msg: str) -> None:
    console.print(f"[{LOG_COLOR['step']}][STEP][/]: {msg}")

def log_info(msg: str) -> None:
    console.print(f"[{LOG_COLOR['info']}][INFO][/]: {msg}")

def log_warn(msg: str) -> None:
    console.print(f"[{LOG_COLOR['warning']}][WARNING][/]: {msg}")

def log_success(msg: str) -> None:
    console.print(f"[{LOG_COLOR['success']}][DONE][/]: {msg}")

def log_run(msg: str) -> None:
    console.print(f"[{LOG_COLOR['run']}][RUN][/]: {msg}")


# =========================
# STEP LOGGER
# =========================
class StepLogger:
    """Reports pipeline phases as they start, complete or fail.

    Anything with the same methods can be handed to the pipeline instead,
    e.g. a silent logger in tests.
    """

    def __init__(self) -> None:
        self.current_step = ""
        self._progress: Optional[Progress] = None
        self._task = None

    def step_starting(self, info: str) -> None:
        if self.current_step:
            self.step_completed()
        self.current_step = info
        log_step(f"{info} ...")

    def step_completed(self) -> None:
        self._stop_progress()
        log_success(f"Completed: {self.current_step}")
        self.current_step = ""

    def step_failed(self, err: BaseException) -> None:
        self._stop_progress()
        console.print(f"[{LOG_COLOR['error']}][FAILED][/]: {err}")
        self.current_step = ""

    def start_progress(self, total: int) -> None:
        self._stop_progress()
        self._progress = Progress(
            TextColumn("[cyan]Downloading"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )
        self._progress.start()
        self._task = self._progress.add_task("", total=total)

    def do_progress(self, completed: int) -> None:
        if self._progress is not None:
            self._progress.update(self._task, completed=completed)

    def _stop_progress(self) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None
            self._task = None
