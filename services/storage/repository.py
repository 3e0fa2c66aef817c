"""JSON-file repository — transcripts, conversations, and lookup rows on disk.

Layout under the repository root:
  redaction_config.json                    {"pii_fields": "all"}
  salespeople.json                         {"<salesperson_id>": "<name>", ...}
  transcripts/<transcript_id>.json         TranscriptRecord
  conversations/<transcript_id>/<n>.json   ConversationRecord, n = conversation_number
"""

import json
import os
import threading
import uuid
from pathlib import Path
from typing import Optional
from loguru import logger

from config.errors import UpstreamError
from config.schemas import ConversationRecord, TranscriptRecord

REPOSITORY_ROOT = os.getenv("REPOSITORY_ROOT", "data/processed")
DEFAULT_PII_FIELDS = "all"


class JsonFileRepository:
    def __init__(self, root: str = REPOSITORY_ROOT):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _read_json(self, path: Path):
        if not path.is_file():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read {path}: {e}")
            return None

    def _write_json(self, path: Path, payload: dict) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(payload, f, indent=2, default=str)
        except OSError as e:
            raise UpstreamError(f"Failed to write {path}: {e}") from e

    # ── LOOKUPS ──

    def redaction_fields(self) -> str:
        config = self._read_json(self.root / "redaction_config.json") or {}
        return (config.get("pii_fields") or DEFAULT_PII_FIELDS).lower()

    def salesperson_name(self, salesperson_id: str) -> Optional[str]:
        names = self._read_json(self.root / "salespeople.json") or {}
        return names.get(salesperson_id)

    # ── INSERTS ──

    def insert_transcript(self, record: TranscriptRecord) -> str:
        transcript_id = str(uuid.uuid4())
        payload = {"id": transcript_id, **record.model_dump(mode="json")}
        with self._lock:
            self._write_json(self.root / "transcripts" / f"{transcript_id}.json", payload)
        logger.info(f"Transcript saved: {transcript_id}")
        return transcript_id

    def insert_conversation(self, record: ConversationRecord) -> None:
        conv = record.conversation
        payload = record.model_dump(mode="json")
        path = self.root / "conversations" / record.transcript_id / f"{conv.conversation_number}.json"
        with self._lock:
            self._write_json(path, payload)

    # ── READS ──

    def get_transcript(self, transcript_id: str) -> Optional[dict]:
        return self._read_json(self.root / "transcripts" / f"{transcript_id}.json")

    def list_conversations(self, transcript_id: str) -> list[dict]:
        directory = self.root / "conversations" / transcript_id
        if not directory.is_dir():
            return []
        rows = [self._read_json(p) for p in directory.glob("*.json")]
        rows = [r for r in rows if r]
        return sorted(rows, key=lambda r: r["conversation"]["conversation_number"])
