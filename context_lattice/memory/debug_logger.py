"""
Compression Debug Logger

Saves a snapshot of every compression run:
1. Layer contents before compression
2. Layer contents after compression and eviction
3. The CompressionResult and evicted entries

Creates timestamped debug files in the configured directory (disabled by default).

Files generated per run:
    - 01_before_<session>_<timestamp>.txt: layer contents before
    - 02_after_<session>_<timestamp>.txt: layer contents after
    - 03_result_<session>_<timestamp>.json: result + eviction metadata
"""

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class CompressionDebugLogger:
    """Writes compression snapshots for debugging and analysis"""

    def __init__(self, base_dir: str = "debug_logs", enabled: bool = False):
        self.enabled = enabled
        self.base_dir = Path(base_dir)
        self.current_timestamp: Optional[str] = None
        self.current_session: str = "session"
        if self.enabled:
            self.base_dir.mkdir(parents=True, exist_ok=True)

    def start_run(self, session_key: str = "session"):
        """Begin a new compression snapshot"""
        if not self.enabled:
            return
        self.current_timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")[:-3]
        self.current_session = re.sub(r'[^A-Za-z0-9_.-]', '_', session_key)

    def _get_filename(self, prefix: str, extension: str = "txt") -> Path:
        """Generate a timestamped filename"""
        if not self.current_timestamp:
            self.start_run(self.current_session)
        return self.base_dir / f"{prefix}_{self.current_session}_{self.current_timestamp}.{extension}"

    def _write(self, filepath: Path, text: str) -> bool:
        # Debug output is best-effort: a broken debug directory never fails a compression
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            with open(filepath, 'w', encoding='utf-8') as f:
                f.write(text)
        except OSError as e:
            logger.warning(f"⚠️  Debug log write failed for {filepath.name}: {e}")
            return False
        return True

    def _write_layers(self, prefix: str, title: str, snapshot: Dict[str, Any]) -> Optional[Path]:
        filepath = self._get_filename(prefix)
        lines = [
            "=" * 80,
            title,
            "=" * 80,
            f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Session: {self.current_session}",
            "=" * 80,
            "",
        ]
        for layer_name, entries in snapshot.get("layers", {}).items():
            tokens = sum(entry.get("tokens") or 0 for entry in entries)
            lines.append(f"{layer_name.upper()} ({len(entries)} entries, {tokens} tokens):")
            lines.append("-" * 80)
            for i, entry in enumerate(entries, 1):
                kind = (entry.get("metadata") or {}).get("type", "message")
                lines.append(f"[{i}] {entry.get('role')} ({kind}, {entry.get('tokens')} tokens) @ {entry.get('timestamp')}")
                lines.append(f"{entry.get('content')}\n")
            lines.append("")

        if not self._write(filepath, "\n".join(lines) + "\n"):
            return None
        return filepath

    def log_before(self, snapshot: Dict[str, Any]) -> Optional[Path]:
        if not self.enabled:
            return None
        filepath = self._write_layers("01_before", "CONTEXT BEFORE COMPRESSION", snapshot)
        if filepath:
            logger.debug(f"📝 Debug: pre-compression state logged to {filepath.name}")
        return filepath

    def log_after(self, snapshot: Dict[str, Any]) -> Optional[Path]:
        if not self.enabled:
            return None
        filepath = self._write_layers("02_after", "CONTEXT AFTER COMPRESSION", snapshot)
        if filepath:
            logger.debug(f"📝 Debug: post-compression state logged to {filepath.name}")
        return filepath

    def log_result(self, result: Any, evicted: Optional[List[Any]] = None):
        """
        Log the compression result

        Args:
            result: CompressionResult (or None when compression was skipped)
            evicted: Entries evicted after compression
        """
        if not self.enabled:
            return None

        filepath = self._get_filename("03_result", "json")
        payload = {
            "timestamp": datetime.now().isoformat(),
            "session": self.current_session,
            "result": result.to_dict() if result is not None else None,
            "evicted": [entry.to_dict() for entry in (evicted or [])],
        }
        if not self._write(filepath, json.dumps(payload, indent=2, default=str)):
            return None
        logger.debug(f"📝 Debug: compression result logged to {filepath.name}")
        return filepath

    def end_run(self):
        if not self.enabled:
            return
        self.current_timestamp = None
