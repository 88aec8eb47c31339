import threading
from typing import Dict, Optional


class SubjectDirectory:
    """Subject id -> display name, refreshed from the device user list"""

    def __init__(self, names: Optional[Dict[str, str]] = None):
        self._lock = threading.Lock()
        self._names: Dict[str, str] = dict(names or {})

    def display_name(self, subject_id: str) -> str:
        with self._lock:
            name = self._names.get(str(subject_id))
        return name or f"User {subject_id}"

    def replace(self, names: Dict[str, str]) -> None:
        cleaned = {str(k): str(v).strip() for k, v in names.items() if v}
        with self._lock:
            self._names = cleaned

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)
