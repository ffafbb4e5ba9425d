"""
Progress reporting for version uploads, archive assembly and downloads.

Library code only talks to the :class:`ProgressReporter` protocol; the CLI
passes a rich implementation, everything else gets the null one.
"""

from __future__ import annotations

from typing import Iterable, Iterator, Protocol


class TransferProgress(Protocol):
    """Byte counter for one object moving in or out of storage."""

    def advance(self, byte_count: int) -> None: ...
    def __enter__(self) -> TransferProgress: ...
    def __exit__(self, *exc_info) -> None: ...


class ProgressReporter(Protocol):
    def update_status(self, message: str) -> None: ...
    def step(self, step_name: str, current: int, total: int) -> None: ...
    def transfer(self, total_bytes: int, description: str) -> TransferProgress: ...
    def warn(self, message: str) -> None: ...


def track_chunks(chunks: Iterable[bytes], progress: TransferProgress) -> Iterator[bytes]:
    """Pass chunks through while advancing ``progress`` by their size."""
    for chunk in chunks:
        progress.advance(len(chunk))
        yield chunk


class RichProgressReporter:
    """
    Rich console output on stderr, so ``--json`` on stdout stays parseable.

    Steps of one run (files of a version, entries of an archive) share a
    single bar that is torn down after the last step.
    """

    def __init__(self) -> None:
        from rich.console import Console

        self.console = Console(stderr=True)
        self._steps = None
        self._steps_task = None

    def update_status(self, message: str) -> None:
        self.console.print(f"[bold blue]>>>[/] {message}")

    def warn(self, message: str) -> None:
        self.console.print(f"[bold yellow]![/] {message}")

    def step(self, step_name: str, current: int, total: int) -> None:
        from rich.progress import BarColumn, MofNCompleteColumn, Progress

        if self._steps is None:
            self._steps = Progress(
                "[progress.description]{task.description}",
                BarColumn(),
                MofNCompleteColumn(),
                console=self.console,
                transient=True,
            )
            self._steps.start()
            self._steps_task = self._steps.add_task(step_name, total=total)

        self._steps.update(self._steps_task, description=step_name, completed=current - 1)
        if current >= total:
            self._steps.update(self._steps_task, completed=total)
            self._steps.stop()
            self._steps = None
            self.console.print(f"  [dim]{total} step(s) done[/]")

    def transfer(self, total_bytes: int, description: str) -> RichTransfer:
        return RichTransfer(self.console, total_bytes, description)


class RichTransfer:
    """A byte bar that lives for the duration of a ``with`` block."""

    def __init__(self, console, total_bytes: int, description: str) -> None:  # type: ignore[no-untyped-def]
        self._console = console
        self._total = total_bytes or None
        self._description = description
        self._progress = None
        self._task_id = None

    def __enter__(self) -> RichTransfer:
        from rich.progress import (
            BarColumn,
            DownloadColumn,
            Progress,
            TimeRemainingColumn,
            TransferSpeedColumn,
        )

        self._progress = Progress(
            "[progress.description]{task.description}",
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=self._console,
        )
        self._progress.start()
        self._task_id = self._progress.add_task(self._description, total=self._total)
        return self

    def advance(self, byte_count: int) -> None:
        if self._progress is not None:
            self._progress.update(self._task_id, advance=byte_count)

    def __exit__(self, *exc_info) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None


class NullProgressReporter:
    """Silent reporter for library callers, ``--json`` mode and tests."""

    def update_status(self, message: str) -> None:
        pass

    def step(self, step_name: str, current: int, total: int) -> None:
        pass

    def transfer(self, total_bytes: int, description: str) -> NullTransfer:
        return NullTransfer()

    def warn(self, message: str) -> None:
        pass


class NullTransfer:
    def advance(self, byte_count: int) -> None:
        pass

    def __enter__(self) -> NullTransfer:
        return self

    def __exit__(self, *exc_info) -> None:
        pass
