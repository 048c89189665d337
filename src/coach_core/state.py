from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class RuntimeState:
    is_running: bool = True
    snapshots_processed: int = 0
    snapshots_rejected: int = 0
    decisions_made: int = 0
    plans_rejected: int = 0
    consecutive_failures: int = 0
    last_cycle_started_at: datetime | None = None
    last_cycle_finished_at: datetime | None = None
    notes: list[str] = field(default_factory=list)

    def mark_start(self) -> None:
        self.last_cycle_started_at = datetime.now(timezone.utc)

    def mark_finish(self) -> None:
        self.last_cycle_finished_at = datetime.now(timezone.utc)

    def add_note(self, note: str) -> None:
        self.notes.append(note)
        if len(self.notes) > 300:
            self.notes = self.notes[-300:]

    def to_dict(self) -> dict:
        return {
            "is_running": self.is_running,
            "snapshots_processed": self.snapshots_processed,
            "snapshots_rejected": self.snapshots_rejected,
            "decisions_made": self.decisions_made,
            "plans_rejected": self.plans_rejected,
            "consecutive_failures": self.consecutive_failures,
            "last_cycle_started_at": self.last_cycle_started_at.isoformat() if self.last_cycle_started_at else None,
            "last_cycle_finished_at": self.last_cycle_finished_at.isoformat() if self.last_cycle_finished_at else None,
            "notes": self.notes[-10:],
        }
