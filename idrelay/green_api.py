import mimetypes
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from .db import Database, setting


class GreenAPIClient:
    def __init__(self, base_url: str, id_instance: str, api_token: str, media_url: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.media_url = (media_url or base_url).rstrip("/")
        self.id_instance = id_instance
        self.api_token = api_token

    @classmethod
    def from_env(cls, db: Optional[Database] = None) -> "GreenAPIClient":
        # Prefer DB settings if available, fall back to environment variables
        db = db or Database()
        base_url = setting("GREEN_API_BASE_URL", "https://api.green-api.com", db=db)
        return cls(
            base_url=base_url,
            id_instance=setting("GREEN_API_INSTANCE_ID", "", db=db),
            api_token=setting("GREEN_API_API_TOKEN", "", db=db),
            media_url=setting("GREEN_API_MEDIA_URL", base_url, db=db),
        )

    def _url(self, path: str, media: bool = False) -> str:
        base = self.media_url if media else self.base_url
        return f"{base}/waInstance{self.id_instance}/{path}/{self.api_token}"

    async def send_message(self, chat_id: str, message: str) -> Dict[str, Any]:
        url = self._url("sendMessage")
        payload = {"chatId": chat_id, "message": message}
        async with httpx.AsyncClient(timeout=30) as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
            return resp.json()

    async def send_file_by_upload(self, chat_id: str, file_path: Path, filename: Optional[str] = None, caption: Optional[str] = None) -> Dict[str, Any]:
        url = self._url("sendFileByUpload", media=True)
        ctype = mimetypes.guess_type(str(file_path))[0] or "application/octet-stream"
        data = {"chatId": chat_id, "fileName": filename or file_path.name}
        if caption:
            data["caption"] = caption
        async with httpx.AsyncClient(timeout=300) as client:
            with file_path.open("rb") as f:
                files = {"file": (filename or file_path.name, f, ctype)}
                resp = await client.post(url, data=data, files=files)
            resp.raise_for_status()
            return resp.json()

    async def upload_file(self, file_path: Path) -> Dict[str, Any]:
        """
        Upload to Green API storage. Returns JSON with urlFile.
        """
        url = self._url("uploadFile", media=True)
        ctype = mimetypes.guess_type(str(file_path))[0] or "application/octet-stream"
        async with httpx.AsyncClient(timeout=300) as client:
            with file_path.open("rb") as f:
                resp = await client.post(url, content=f.read(), headers={"Content-Type": ctype, "GA-Filename": file_path.name})
            resp.raise_for_status()
            return resp.json()

    async def send_file_by_url(self, chat_id: str, url_file: str, filename: str, caption: Optional[str] = None) -> Dict[str, Any]:
        url = self._url("sendFileByUrl")
        payload = {
            "chatId": chat_id,
            "urlFile": url_file,
            "fileName": filename,
        }
        if caption:
            payload["caption"] = caption
        async with httpx.AsyncClient(timeout=60) as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()
            return resp.json()

    async def send_document(self, chat_id: str, file_path: Path, filename: str, caption: Optional[str] = None) -> Dict[str, Any]:
        """
        Direct upload-and-send first; some tariffs reject it, so fall back to
        uploadFile + sendFileByUrl.
        """
        try:
            return await self.send_file_by_upload(chat_id=chat_id, file_path=file_path, filename=filename, caption=caption)
        except httpx.HTTPError:
            upload = await self.upload_file(file_path)
            return await self.send_file_by_url(
                chat_id=chat_id,
                url_file=upload.get("urlFile", ""),
                filename=filename,
                caption=caption,
            )

    async def receive_notification(self) -> Optional[Dict[str, Any]]:
        """
        Long-poll ReceiveNotification. Returns None when the queue is empty.
        """
        url = self._url("receiveNotification")
        async with httpx.AsyncClient(timeout=65) as client:
            resp = await client.get(url)
            if resp.status_code == 200 and resp.content:
                # When no notification, API may return null
                return resp.json()
            if resp.status_code == 204:
                return None
            resp.raise_for_status()
            return None

    async def delete_notification(self, receipt_id: int) -> None:
        """
        Acknowledge a notification so it is not delivered again.
        DELETE /waInstance{id}/deleteNotification/{token}/{receiptId}
        """
        url = f"{self._url('deleteNotification')}/{receipt_id}"
        async with httpx.AsyncClient(timeout=30) as client:
            resp = await client.delete(url)
            if resp.status_code in (200, 204):
                return
            resp.raise_for_status()
