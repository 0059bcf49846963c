"""Default sinks for the transcript-analysis and task-queue collaborators.

Both write to the cache directory. Anything exposing the same ``analyze`` or
``submit`` method can be passed to the controller instead.
"""
import os
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List

from sshbridge.models import TranscriptEntry, ENTRY_TOOL_USE, ENTRY_USER_INPUT
from sshbridge.utils import iso_now, json_line, safe_name


class TranscriptArchive:
    def __init__(self, transcripts_dir: str):
        self.transcripts_dir = transcripts_dir

    def analyze(self, transcript: List[TranscriptEntry], context: Dict[str, Any]) -> str:
        """Append one summary record and the full transcript as JSON lines."""
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = safe_name(f"{context.get('project', 'unknown')}__{context.get('session_id', 'session')}")
        path = os.path.join(self.transcripts_dir, f"{name}__{stamp}.jsonl")

        files = sorted({
            entry.metadata["file_path"]
            for entry in transcript
            if entry.kind == ENTRY_TOOL_USE and entry.metadata.get("file_path")
        })
        summary = {
            "ts": iso_now(),
            "event": "transcript",
            "entries": len(transcript),
            "user_inputs": sum(1 for entry in transcript if entry.kind == ENTRY_USER_INPUT),
            "tool_calls": sum(1 for entry in transcript if entry.kind == ENTRY_TOOL_USE),
            "files_touched": files,
        }
        summary.update(context)
        json_line(path, summary)
        for entry in transcript:
            json_line(path, entry.to_dict())
        return path


class TaskQueue:
    def __init__(self, tasks_dir: str):
        self.tasks_dir = tasks_dir

    def submit(self, params: Dict[str, Any]) -> str:
        task_id = uuid.uuid4().hex[:8]
        record = {"task_id": task_id, "status": "queued", "created_at": iso_now()}
        record.update(params)
        path = os.path.join(self.tasks_dir, f"{task_id}.json")
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(record, handle, ensure_ascii=False, indent=2, default=str)
        return task_id
