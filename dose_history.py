import csv
import json
import time
from dataclasses import asdict, is_dataclass
from pathlib import Path

from logging_utils import log_event

HISTORY_FIELDS = [
    "recorded_at",
    "clicks",
    "dose_mg",
    "target_dose",
    "target_clicks",
    "mode",
    "medication",
    "pen_index",
    "pen_label",
]


class DoseHistory:
    """Persists saved dose records to JSON and CSV, newest first."""

    def __init__(self, history_dir: Path, max_entries: int = 200):
        self.history_dir = Path(history_dir)
        self.history_dir.mkdir(parents=True, exist_ok=True)
        self.json_path = self.history_dir / "dose_history.json"
        self.csv_path = self.history_dir / "dose_history.csv"
        self.max_entries = max(1, int(max_entries))

    def entries(self) -> list[dict]:
        if not self.json_path.exists():
            return []
        try:
            with open(self.json_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError):
            log_event("WARNING", "History", "Unreadable dose history, starting empty", path=self.json_path)
            return []
        entries = payload.get("entries", []) if isinstance(payload, dict) else []
        return entries if isinstance(entries, list) else []

    def _to_row(self, record) -> dict:
        data = asdict(record) if is_dataclass(record) else dict(record)
        pen = data.pop("pen", None) or {}
        data.update(pen)
        mode = data.get("mode")
        data["mode"] = getattr(mode, "value", mode)
        if data.get("dose_mg") is not None:
            data["dose_mg"] = round(float(data["dose_mg"]), 4)
        return data

    def append(self, record) -> None:
        row = self._to_row(record)
        entries = [row] + self.entries()
        self._write(entries[: self.max_entries])
        log_event("INFO", "History", "Dose saved",
                  clicks=row.get("clicks"), dose_mg=row.get("dose_mg"), path=self.json_path)

    def clear(self) -> None:
        self.json_path.unlink(missing_ok=True)
        self.csv_path.unlink(missing_ok=True)

    def _write(self, entries: list[dict]) -> None:
        payload = {
            "generated_at": time.time(),
            "entry_count": len(entries),
            "entries": entries,
        }
        with open(self.json_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)

        with open(self.csv_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=HISTORY_FIELDS)
            writer.writeheader()
            for row in entries:
                writer.writerow({key: row.get(key, "") for key in HISTORY_FIELDS})
