from pathlib import Path
from typing import Optional

from .pairing import BACK, FRONT
from .storage import IMAGE_EXTENSIONS


def normalize_whatsapp_id(chat_id: Optional[str]) -> Optional[str]:
    """
    '94770889232@c.us', '+94 77 088-9232' and '94770889232' all become '+94770889232'.
    Group JIDs ('...@g.us') are returned unchanged so they never match a person.
    """
    if not chat_id:
        return None
    s = str(chat_id).strip()
    if not s:
        return None
    if s.endswith("@g.us"):
        return s
    local = s.split("@", 1)[0]
    digits = "".join(ch for ch in local if ch.isdigit())
    if not digits:
        return None
    return f"+{digits}"


def same_sender(a: Optional[str], b: Optional[str]) -> bool:
    na, nb = normalize_whatsapp_id(a), normalize_whatsapp_id(b)
    return bool(na) and na == nb


def side_from_text(text: Optional[str]) -> Optional[str]:
    """Exact 'front' / 'back' (optionally as /front, /back), case-insensitive."""
    s = (text or "").strip().lower().lstrip("/")
    if s in (FRONT, BACK):
        return s
    return None


def side_from_caption(caption: Optional[str]) -> Optional[str]:
    """Captions only need to mention the side: 'ID 1 front' counts as front."""
    s = (caption or "").lower()
    if FRONT in s:
        return FRONT
    if BACK in s:
        return BACK
    return None


def image_extension(file_name: Optional[str], mime_type: Optional[str]) -> Optional[str]:
    """Extension to store the upload under, or None when it is not an image we accept."""
    suffix = Path(file_name or "").suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return suffix
    mt = (mime_type or "").lower()
    if mt.startswith("image/"):
        sub = mt.split("/", 1)[1].split(";", 1)[0]
        ext = ".jpg" if sub in ("jpeg", "jpg", "pjpeg") else f".{sub}"
        return ext if ext in IMAGE_EXTENSIONS else None
    if not file_name and not mime_type:
        # plain photo messages don't always carry metadata
        return ".jpg"
    return None
