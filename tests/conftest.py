import itertools
import os
import pathlib
import sys
import threading
import time
from typing import Dict, List, Optional

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import minter`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey  # noqa: E402

from minter.builder import idempotency_key  # noqa: E402
from minter.config import ConfigManager  # noqa: E402
from minter.identity import IdentitySigner  # noqa: E402
from minter.manifest import parse_manifest  # noqa: E402
from minter.principal import Principal  # noqa: E402
from minter.transport import InterfaceId, Success  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless MINTER_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('MINTER_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set MINTER_RUN_SLOW=1 to enable'))


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------

CANISTER_ID = Principal(bytes.fromhex("00000000000000010101")).to_text()
ASSET_CANISTER_ID = Principal(bytes.fromhex("00000000000000020101")).to_text()


def user_principal(n: int) -> str:
    return Principal(bytes([n % 256]) * 28 + b"\x02").to_text()


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeClock:
    """Clock that only moves when the scheduler sleeps."""

    def __init__(self, start: float = 1000.0):
        self.t = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float, cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            return
        self.sleeps.append(seconds)
        self.t += max(seconds, 0.0)


class ScriptedTransport:
    """
    Transport that replays a scripted outcome list per entry.

    Entries are recognized by the nonce of the signed content. Once an
    entry's script is exhausted, every further call succeeds.
    """

    def __init__(
        self,
        manifest_id: str,
        scripts: Optional[Dict[str, list]] = None,
        delay: float = 0.0,
        interfaces: Optional[List[InterfaceId]] = None,
        on_send=None,
    ):
        self._by_nonce: Dict[str, str] = {}
        self._manifest_id = manifest_id
        self._scripts = {k: list(v) for k, v in (scripts or {}).items()}
        self._delay = delay
        self._interfaces = interfaces if interfaces is not None else [InterfaceId.MINT]
        self._on_send = on_send
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        self._active = 0
        self.max_concurrent = 0
        self.calls: List[str] = []
        self.envelopes = []
        self.timeouts: List[Optional[float]] = []
        self.interface_queries = 0

    def _entry_for(self, nonce: str) -> str:
        for entry_id in self._scripts:
            self._by_nonce.setdefault(idempotency_key(self._manifest_id, entry_id), entry_id)
        return self._by_nonce.get(nonce, nonce)

    def send(self, envelope, timeout=None):
        with self._lock:
            entry_id = self._entry_for(envelope.content["nonce"])
            self.calls.append(entry_id)
            self.envelopes.append(envelope)
            self.timeouts.append(timeout)
            self._active += 1
            self.max_concurrent = max(self.max_concurrent, self._active)
            script = self._scripts.get(entry_id)
            outcome = script.pop(0) if script else Success(token_id=next(self._tokens), transaction_id=1)
        try:
            if self._on_send is not None:
                self._on_send(entry_id)
            if self._delay:
                time.sleep(self._delay)
            return outcome
        finally:
            with self._lock:
                self._active -= 1

    def supported_interfaces(self, canister_id, timeout=None):
        self.interface_queries += 1
        return list(self._interfaces)

    def calls_for(self, entry_id: str) -> int:
        return sum(1 for c in self.calls if c == entry_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def signer():
    return IdentitySigner(Ed25519PrivateKey.generate())


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    for name in list(os.environ):
        if name.startswith("MINTER_") and name != "MINTER_RUN_SLOW":
            monkeypatch.delenv(name, raising=False)
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


def entry_doc(entry_id: str, n: int = 1, **metadata) -> dict:
    md = {
        "name": f"Token {entry_id}",
        "asset_canister": ASSET_CANISTER_ID,
        "mime_type": "image/png",
    }
    md.update(metadata)
    return {"id": entry_id, "recipient": user_principal(n), "metadata": md}


def build_manifest(entry_ids, source: Optional[pathlib.Path] = None, manifest_id: str = "test-manifest"):
    doc = {
        "manifest_id": manifest_id,
        "canister_id": CANISTER_ID,
        "entries": [entry_doc(eid, i + 1) for i, eid in enumerate(entry_ids)],
    }
    return parse_manifest(doc, source=source)


@pytest.fixture
def make_manifest(tmp_path):
    def _make(entry_ids, manifest_id: str = "test-manifest"):
        return build_manifest(entry_ids, source=tmp_path / "manifest.yaml", manifest_id=manifest_id)
    return _make
