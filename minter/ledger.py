"""Durable progress ledger.

One JSON document per manifest, rewritten atomically on every terminal
transition:

    {
      "version": 1,
      "manifest_id": "sha256:…",
      "records": {
        "<entry_id>": {"entry_id": …, "status": "succeeded", "token_id": 7, …}
      }
    }

A record is written only once an entry is terminal for the run. On resume,
entries recorded as succeeded are skipped; failed entries are attempted again.
"""

from __future__ import annotations

import json
import pathlib
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Set, Union

from minter.core import now_rfc3339, write_canonical_json
from minter.errors import LedgerError
from minter.observability import MintLayer, get_logger

logger = get_logger("ledger", MintLayer.LEDGER)

LEDGER_VERSION = 1
LEDGER_SUFFIX = ".progress.json"

STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class ProgressRecord:
    """Terminal result of one entry."""
    entry_id: str
    status: str
    attempts: int
    token_id: Optional[int] = None
    transaction_id: Optional[int] = None
    failure_kind: Optional[str] = None
    failure_reason: Optional[str] = None
    timestamp: str = ""

    def __post_init__(self):
        if self.status not in (STATUS_SUCCEEDED, STATUS_FAILED):
            raise ValueError(f"invalid record status: {self.status!r}")
        if not self.timestamp:
            object.__setattr__(self, "timestamp", now_rfc3339())

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressRecord":
        return cls(
            entry_id=str(data["entry_id"]),
            status=str(data["status"]),
            attempts=int(data.get("attempts", 0)),
            token_id=data.get("token_id"),
            transaction_id=data.get("transaction_id"),
            failure_kind=data.get("failure_kind"),
            failure_reason=data.get("failure_reason"),
            timestamp=str(data.get("timestamp") or ""),
        )


def default_ledger_path(manifest_path: Union[str, pathlib.Path]) -> pathlib.Path:
    """`<manifest>.progress.json` beside the manifest."""
    p = pathlib.Path(manifest_path)
    return p.with_name(p.name + LEDGER_SUFFIX)


def _read_document(path: pathlib.Path) -> Dict[str, Any]:
    try:
        doc = json.loads(path.read_text(encoding="utf-8"))
    except OSError as ex:
        raise LedgerError(f"cannot read ledger {path}: {ex}") from ex
    except ValueError as ex:
        raise LedgerError(f"ledger {path} is not valid JSON: {ex}") from ex

    if not isinstance(doc, dict) or doc.get("version") != LEDGER_VERSION:
        raise LedgerError(f"ledger {path} has unsupported format")
    if not isinstance(doc.get("records"), dict):
        raise LedgerError(f"ledger {path} has no records object")
    return doc


class ProgressLedger:
    """
    Keyed store of terminal results, safe to share across worker threads.

    Writes are serialized and each one replaces the whole file, so a crash
    leaves either the previous or the new document on disk.
    """

    def __init__(
        self,
        path: Union[str, pathlib.Path],
        manifest_id: str,
        records: Optional[Dict[str, ProgressRecord]] = None,
    ):
        self.path = pathlib.Path(path)
        self.manifest_id = manifest_id
        self._records: Dict[str, ProgressRecord] = dict(records or {})
        self._lock = threading.Lock()

    @classmethod
    def open(
        cls,
        path: Union[str, pathlib.Path],
        manifest_id: str,
        resume: bool = True,
    ) -> "ProgressLedger":
        """Open (or start) the ledger for a manifest."""
        p = pathlib.Path(path)
        if not p.exists():
            return cls(p, manifest_id)

        existing = cls.load(p)
        if existing.manifest_id != manifest_id:
            raise LedgerError(
                f"ledger {p} belongs to manifest {existing.manifest_id}, not {manifest_id}"
            )
        if not resume and existing._records:
            raise LedgerError(
                f"ledger {p} already holds {len(existing._records)} records; "
                "resume the run or move the ledger aside"
            )
        logger.info(
            "Resuming from ledger",
            path=str(p),
            records=len(existing._records),
            succeeded=len(existing.succeeded_ids()),
        )
        return existing

    @classmethod
    def load(cls, path: Union[str, pathlib.Path]) -> "ProgressLedger":
        """Read an existing ledger without checking which manifest it serves."""
        p = pathlib.Path(path)
        doc = _read_document(p)
        try:
            records = {
                str(entry_id): ProgressRecord.from_dict(raw)
                for entry_id, raw in doc["records"].items()
            }
        except (KeyError, TypeError, ValueError) as ex:
            raise LedgerError(f"ledger {p} has a malformed record: {ex}") from ex
        return cls(p, str(doc.get("manifest_id", "")), records)

    @property
    def records(self) -> Dict[str, ProgressRecord]:
        with self._lock:
            return dict(self._records)

    def get(self, entry_id: str) -> Optional[ProgressRecord]:
        with self._lock:
            return self._records.get(entry_id)

    def succeeded_ids(self) -> Set[str]:
        with self._lock:
            return {eid for eid, rec in self._records.items() if rec.succeeded}

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return self._document()

    def _document(self) -> Dict[str, Any]:
        return {
            "version": LEDGER_VERSION,
            "manifest_id": self.manifest_id,
            "records": {eid: rec.to_dict() for eid, rec in self._records.items()},
        }

    def record(self, record: ProgressRecord) -> None:
        """Durably store a terminal result, replacing any earlier one."""
        with self._lock:
            previous = self._records.get(record.entry_id)
            self._records[record.entry_id] = record
            try:
                write_canonical_json(self.path, self._document())
            except (OSError, ValueError) as ex:
                if previous is None:
                    del self._records[record.entry_id]
                else:
                    self._records[record.entry_id] = previous
                raise LedgerError(f"cannot write ledger {self.path}: {ex}") from ex
        logger.debug("Recorded entry", entry_id=record.entry_id, status=record.status)


__all__ = [
    "ProgressRecord",
    "ProgressLedger",
    "default_ledger_path",
    "LEDGER_VERSION",
    "STATUS_SUCCEEDED",
    "STATUS_FAILED",
]
