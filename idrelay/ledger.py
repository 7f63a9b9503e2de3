import json
from pathlib import Path
from typing import Any, List, Optional


class JsonFile:
    """Tiny key-value store backed by one JSON object on disk."""

    def __init__(self, path: Path):
        self.path = path

    def _read(self) -> dict:
        try:
            if self.path.exists():
                data = json.loads(self.path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
        except (OSError, ValueError):
            pass
        return {}

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any):
        data = self._read()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self.path)


class KnownChats:
    """Ordered list of every chat that has talked to the bot; used as broadcast targets."""

    KEY = "chats"

    def __init__(self, path: Path = Path("storage/known_chats.json")):
        self.file = JsonFile(path)
        self._chats: List[str] = []

    def load(self) -> List[str]:
        items = self.file.get(self.KEY, []) or []
        self._chats = [str(c) for c in items if c] if isinstance(items, list) else []
        return list(self._chats)

    def add(self, chat_id: str) -> bool:
        if not chat_id or chat_id in self._chats:
            return False
        self._chats.append(chat_id)
        self.file.set(self.KEY, self._chats)
        return True

    def all(self) -> List[str]:
        return list(self._chats)

    def __contains__(self, chat_id: str) -> bool:
        return chat_id in self._chats

    def __len__(self) -> int:
        return len(self._chats)
