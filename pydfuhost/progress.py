"""
Progress bar utilities
Turns the (done, total) reports of a DeviceSession into progress bars

This program is free software; you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation; either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program; if not, write to the Free Software
Foundation, Inc., 59 Temple Place, Suite 330, Boston, MA  02111-1307  USA
"""
from abc import ABC, abstractmethod
from typing import Dict, Optional, Type

from rich import progress as rich_progress
from tqdm import tqdm


class AbstractProgressBackend(ABC):
    """Abstract class for progress bar backends"""

    @abstractmethod
    def start_task(self, *, description: str = None, total: int = None):
        """
        Start progress task, finishing the previous one
        :param description:
        :param total: None when the size is not known in advance
        """

    @abstractmethod
    def update(self, *, completed: int):
        """
        Update progress task
        :param completed: bytes done so far
        """

    @abstractmethod
    def fail(self):
        """Runs on Progress.__exit__ if ctx raises exception"""

    @abstractmethod
    def stop(self):
        """Stop progressbar backend"""


class NoProgressBarBackend(AbstractProgressBackend):
    """progress bar backend that does nothing"""

    def start_task(self, *, description: str = None, total: int = None):
        pass

    def update(self, *, completed: int):
        pass

    def fail(self):
        pass

    def stop(self):
        pass


class TqdmBackend(AbstractProgressBackend):
    """tqdm based progress bar backend"""

    BAR_FORMAT = ("{desc} {bar:20} {percentage:3.0f}% "
                  "{remaining} {n_fmt}/{total_fmt} bytes {rate_fmt}")
    BAR_FORMAT_INF = "{desc} {n_fmt} bytes {rate_fmt}"

    def __init__(self):
        self._progress: Optional[tqdm] = None

    def _close(self):
        if self._progress is not None:
            self._progress.close()
            self._progress = None

    def start_task(self, *, description: str = None, total: int = None):
        self._close()
        self._progress = tqdm(
            total=total,
            unit=' bytes',
            desc=description,
            bar_format=self.BAR_FORMAT if total else self.BAR_FORMAT_INF,
            ascii=' ━',
        )

    def update(self, *, completed: int):
        if self._progress is None:
            return
        self._progress.n = completed
        self._progress.refresh()

    def fail(self):
        if self._progress is not None:
            self._progress.set_description_str(f"{self._progress.desc} failed")
        self._close()

    def stop(self):
        self._close()


class RichBackend(AbstractProgressBackend):
    """rich.progress based progress bar backend"""

    def __init__(self):
        self._progress: Optional[rich_progress.Progress] = None
        self._task_id = None

    def _prepare(self):
        if self._progress is None:
            self._progress = rich_progress.Progress(
                rich_progress.TextColumn(
                    "[progress.description]{task.description}"),
                rich_progress.BarColumn(20),
                rich_progress.TaskProgressColumn(),
                rich_progress.TimeRemainingColumn(),
                rich_progress.DownloadColumn(),
                rich_progress.TransferSpeedColumn(),
            )
            self._progress.start()

    def _recolor(self, color: str, **kwargs):
        task = self._progress.tasks[self._task_id]
        desc = task.description.split(']')[-1]
        self._progress.update(self._task_id, description=f"[{color}]{desc}", **kwargs)

    def start_task(self, *, description: str = None, total: int = None):
        self._prepare()
        if self._task_id is not None:
            self._recolor("#729C1F")
        self._task_id = self._progress.add_task(
            f"[#F92672]{description or ''}", total=total, start=True
        )

    def update(self, *, completed: int):
        if self._task_id is None:
            return
        self._progress.update(self._task_id, completed=completed)
        task = self._progress.tasks[self._task_id]
        if task.total is not None and task.completed >= task.total:
            self._recolor("#729C1F")

    def fail(self):
        if self._task_id is not None:
            self._recolor("red")
        self._shutdown()

    def stop(self):
        if self._task_id is not None:
            task = self._progress.tasks[self._task_id]
            self._recolor("#729C1F", total=task.completed)
        self._shutdown()

    def _shutdown(self):
        if self._progress is not None:
            self._progress.stop()
        self._progress = None
        self._task_id = None


BACKENDS: Dict[str, Type[AbstractProgressBackend]] = {
    'rich': RichBackend,
    'tqdm': TqdmBackend,
    'none': NoProgressBarBackend,
}


class Progress:
    """
    High leveled progress bar class
    Use this as a context, pass the instance as on_progress
    and its phase method as on_phase of a DeviceSession
    """

    def __init__(self, backend: Type[AbstractProgressBackend] = RichBackend):
        self._backend = backend()
        self._description: Optional[str] = None
        self._total: Optional[int] = None
        self._done = 0
        self._task_started = False

    def phase(self, description: str) -> None:
        """A new phase starts, the next report opens a new task"""
        self._description = description
        self._task_started = False

    def __call__(self, done: int, total: Optional[int] = None) -> None:
        if not self._task_started or total != self._total or done < self._done:
            self._backend.start_task(description=self._description, total=total)
            self._task_started = True
            self._total = total
        self._done = done
        self._backend.update(completed=done)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type:
            self._backend.fail()
        else:
            self._backend.stop()
        return False


__all__ = (
    'Progress',
    'RichBackend',
    'TqdmBackend',
    'AbstractProgressBackend',
    'NoProgressBarBackend',
    'BACKENDS',
)
