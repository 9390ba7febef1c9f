from collections.abc import Sequence
from datetime import datetime
import logging
from pathlib import Path
from typing import Protocol

from txnbatch.errors import QuarantineWriteError
from txnbatch.outputs import write_jsonl
from txnbatch.schemas import QuarantineEntry


logger = logging.getLogger(__name__)


class QuarantineSink(Protocol):
    def quarantine(self, entries: Sequence[QuarantineEntry], run_timestamp: datetime, run_key: str) -> str | None:
        ...


class FileQuarantineWriter:
    """Writes each run's rejected records to its own JSON Lines file.

    Files live under ``<root>/<run date>/<run key>.jsonl``; an existing file is
    never overwritten.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def quarantine(self, entries: Sequence[QuarantineEntry], run_timestamp: datetime, run_key: str) -> str | None:
        if not entries:
            return None

        path = self.root / run_timestamp.date().isoformat() / f"{run_key}.jsonl"
        try:
            write_jsonl(path, [entry.as_dict() for entry in entries])
        except OSError as exc:
            raise QuarantineWriteError(f"cannot write quarantine file {path}: {exc}") from exc

        logger.info("quarantined records", extra={"count": len(entries), "location": str(path)})
        return str(path)
