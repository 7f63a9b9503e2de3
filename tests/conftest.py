"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

# must happen before idrelay.db computes its default path
os.environ.setdefault("STORAGE_DIR", tempfile.mkdtemp(prefix="idrelay-test-"))
os.environ.setdefault("POLL_NOTIFICATIONS", "false")

import pytest
from PIL import Image

from idrelay.controller import SessionController
from idrelay.errors import DownloadError
from idrelay.ledger import KnownChats
from idrelay.pdf_packer import PDFComposer
from idrelay.session import SessionStore
from idrelay.storage import Storage


CHAT = "94770000001@c.us"
OTHER_CHAT = "94770000002@c.us"
OPERATOR = "94779999999@c.us"


def write_image(target: Path, color=(200, 30, 30), size=(120, 80)) -> Path:
    target.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(target)
    return target


class FakeClient:
    """Records what the controller would have sent through Green API."""

    def __init__(self):
        self.messages: List[Tuple[str, str]] = []
        self.documents: List[Dict] = []
        self.failing_chats = set()

    async def send_message(self, chat_id: str, message: str):
        if chat_id in self.failing_chats:
            raise RuntimeError("send failed")
        self.messages.append((chat_id, message))
        return {"idMessage": f"m{len(self.messages)}"}

    async def send_document(self, chat_id: str, file_path: Path, filename: str, caption: Optional[str] = None):
        self.documents.append({"chat_id": chat_id, "file_path": Path(file_path), "filename": filename, "caption": caption})
        return {"idMessage": f"d{len(self.documents)}"}

    def texts(self, chat_id: str = CHAT) -> List[str]:
        return [m for c, m in self.messages if c == chat_id]

    def last(self, chat_id: str = CHAT) -> str:
        texts = self.texts(chat_id)
        return texts[-1] if texts else ""


class FakeFetcher:
    """
    Stands in for the HTTP download. URLs starting with 'fail' raise
    DownloadError; a gated URL waits until its event is set.
    """

    def __init__(self):
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []

    def gate(self, url: str) -> asyncio.Event:
        ev = asyncio.Event()
        self.gates[url] = ev
        return ev

    async def __call__(self, url: str, target: Path) -> Path:
        self.calls.append(url)
        ev = self.gates.get(url)
        if ev is not None:
            await ev.wait()
        if url.startswith("fail"):
            raise DownloadError(3, RuntimeError("connection reset"))
        return write_image(target)


class BrokenComposer(PDFComposer):
    def compose(self, placements, chat_id):
        raise RuntimeError("cannot decode image")


@pytest.fixture
def storage(tmp_path) -> Storage:
    s = Storage(base=tmp_path / "storage")
    s.ensure_layout()
    return s


@pytest.fixture
def store(storage) -> SessionStore:
    return SessionStore(storage)


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def ledger(storage) -> KnownChats:
    k = KnownChats(storage.base / "known_chats.json")
    k.load()
    return k


@pytest.fixture
def controller(store, client, fetcher, ledger, storage) -> SessionController:
    return SessionController(
        store=store,
        client=client,
        composer=PDFComposer(storage),
        fetcher=fetcher,
        ledger=ledger,
        operator_id=OPERATOR,
        pdf_retention_seconds=None,
    )
