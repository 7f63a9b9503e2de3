import asyncio
import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import httpx

from .errors import DownloadError

DOWNLOAD_ATTEMPTS = 3
BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 5000

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")

# durable state living under the storage root; survives an operator wipe
PRESERVED_NAMES = ("app.db", "known_chats.json")


def backoff_ms(attempt: int) -> int:
    return min(BACKOFF_BASE_MS * (2 ** attempt), BACKOFF_CAP_MS)


def safe_name(value: str, limit: int = 80) -> str:
    return "".join(c for c in str(value) if c.isalnum() or c in ("@", "_", "-", "."))[:limit] or "unknown"


class Storage:
    def __init__(self, base: Path = Path("storage")):
        self.base = base

    def ensure_layout(self):
        for p in [
            self.base,
            self.base / "raw",
            self.base / "pdf",
            self.base / "pdf_meta",
            self.base / "tmp",
        ]:
            p.mkdir(parents=True, exist_ok=True)

    def chat_dir(self, chat_id: str) -> Path:
        return self.base / "raw" / safe_name(chat_id)

    def image_path_for(self, chat_id: str, sequence: int, ext: str = ".jpg") -> Path:
        ext = ext if ext.startswith(".") else f".{ext}"
        ts = datetime.utcnow().strftime("%Y%m%d%H%M%S%f")
        p = self.chat_dir(chat_id) / f"upload_{sequence:03d}_{ts}{ext.lower()}"
        p.parent.mkdir(parents=True, exist_ok=True)
        return p

    async def download_media(
        self,
        http_client: httpx.AsyncClient,
        url: str,
        target: Path,
        attempts: int = DOWNLOAD_ATTEMPTS,
    ) -> Path:
        """
        Stream ``url`` into ``target``. Tries ``attempts`` times, sleeping
        1s, 2s, 4s... (capped at 5s) between tries, then raises DownloadError.
        """
        if not url:
            raise DownloadError(0, ValueError("No media URL in payload"))

        tmp = self.base / "tmp" / f"dl_{target.parent.name}_{target.name}"
        tmp.parent.mkdir(parents=True, exist_ok=True)

        last_exc: Optional[Exception] = None
        try:
            for attempt in range(attempts):
                try:
                    async with http_client.stream("GET", url) as resp:
                        resp.raise_for_status()
                        with tmp.open("wb") as f:
                            async for chunk in resp.aiter_bytes():
                                f.write(chunk)
                    last_exc = None
                    break
                except Exception as e:
                    last_exc = e
                    if attempt < attempts - 1:
                        await asyncio.sleep(backoff_ms(attempt) / 1000.0)
        except asyncio.CancelledError:
            tmp.unlink(missing_ok=True)
            raise
        if last_exc:
            tmp.unlink(missing_ok=True)
            raise DownloadError(attempts, last_exc)

        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(tmp), str(target))
        return target

    def pdf_output_paths(self, chat_id: str, suggest_name: Optional[str] = None) -> Tuple[Path, Path]:
        ts = datetime.utcnow().strftime("%Y%m%d_%H%M%S_%f")
        name = suggest_name or f"{ts}_{safe_name(chat_id)}.pdf"
        pdf_path = self.base / "pdf" / name
        meta_path = self.base / "pdf_meta" / (pdf_path.stem + ".json")
        pdf_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        return pdf_path, meta_path

    def write_meta(self, meta_path: Path, meta: dict):
        meta_path.write_text(json.dumps(meta, indent=2))

    def delete_path(self, path: Path):
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
        else:
            path.unlink(missing_ok=True)

    def delete_chat(self, chat_id: str):
        self.delete_path(self.chat_dir(chat_id))

    def wipe(self):
        """Remove everything under the storage root (except durable state) and recreate the layout."""
        if self.base.exists():
            for child in self.base.iterdir():
                if child.name in PRESERVED_NAMES:
                    continue
                self.delete_path(child)
        self.ensure_layout()
