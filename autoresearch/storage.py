import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


class JsonSnapshot:
    """Mirror of an in-memory store, written atomically as one JSON document."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        logger.info(f"Loaded {len(data)} records from {self.path}")
        return data

    def save(self, data: Dict[str, Any]) -> None:
        # Write to a sibling temp file and swap it in so readers never see a partial file
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


def snapshot_for(data_dir: Optional[str], name: str) -> Optional[JsonSnapshot]:
    if not data_dir:
        return None
    return JsonSnapshot(Path(data_dir) / f"{name}.json")
