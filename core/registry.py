from threading import Lock
from typing import Dict, List, Optional

from core.models import MachineRecord


class MachineRegistry:
    """
    In-memory store of machine records created by this process.

    - Records live only in process memory (nothing is persisted).
    - Teardown is manual, so records are never removed here.
    """

    def __init__(self) -> None:
        self._records: Dict[str, MachineRecord] = {}
        self._lock = Lock()

    def add(self, record: MachineRecord) -> None:
        with self._lock:
            self._records[record.name] = record

    def get(self, name: str) -> Optional[MachineRecord]:
        with self._lock:
            return self._records.get(name)

    def all(self) -> List[MachineRecord]:
        with self._lock:
            return list(self._records.values())
