from typing import Dict, List, Optional
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TextColumn, TimeElapsedColumn
from clipshelf.domain.events import ImportCompleted, ImportFailed, ImportProgress
from clipshelf.domain.models import ImportStage
from clipshelf.infrastructure.event_bus import EventBus

STAGE_LABELS = {
    ImportStage.PENDING: "Queued",
    ImportStage.PROBING: "Probing",
    ImportStage.FETCHING_INFO: "Fetching info",
    ImportStage.TRANSCODING: "Transcoding",
    ImportStage.DOWNLOADING: "Downloading",
    ImportStage.THUMBNAIL_GEN: "Thumbnail",
    ImportStage.PERSISTING: "Saving",
    ImportStage.COMPLETE: "Done",
    ImportStage.ERROR: "Failed",
}


class ImportProgressView:
    """Subscribes to EventBus import events and renders one rich progress bar per task."""

    def __init__(self, bus: EventBus, console: Optional[Console] = None):
        self.bus = bus
        self.console = console or Console()
        self.progress = Progress(
            TextColumn("[bold]{task.fields[stage]:<13}"),
            BarColumn(),
            TextColumn("{task.percentage:>5.1f}%"),
            TimeElapsedColumn(),
            TextColumn("{task.description}"),
            console=self.console,
            transient=False,
        )
        self._rows: Dict[str, TaskID] = {}
        self._unsubscribers: List = []

    def __enter__(self) -> "ImportProgressView":
        self._unsubscribers = [
            self.bus.subscribe(ImportProgress, self.on_progress),
            self.bus.subscribe(ImportCompleted, self.on_completed),
            self.bus.subscribe(ImportFailed, self.on_failed),
        ]
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self.progress.stop()
        return False

    def _row(self, task_id: str) -> TaskID:
        if task_id not in self._rows:
            self._rows[task_id] = self.progress.add_task(task_id, total=100.0, stage=STAGE_LABELS[ImportStage.PENDING])
        return self._rows[task_id]

    def on_progress(self, event: ImportProgress):
        row = self._row(event.task_id)
        update = {"completed": event.percent, "stage": STAGE_LABELS.get(event.stage, event.stage.value)}
        if event.message:
            update["description"] = event.message
        self.progress.update(row, **update)

    def on_completed(self, event: ImportCompleted):
        self.progress.update(self._row(event.task_id), completed=100.0, stage=STAGE_LABELS[ImportStage.COMPLETE])

    def on_failed(self, event: ImportFailed):
        label = "Cancelled" if event.cancelled else STAGE_LABELS[ImportStage.ERROR]
        self.progress.update(self._row(event.task_id), stage=label, description=f"[red]{event.error_message}")
