from dataclasses import dataclass
from typing import Optional, Union

from .layout import OrientationMode


@dataclass
class ImageArrived:
    chat_id: str
    download_url: str
    caption: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    sender_id: Optional[str] = None


@dataclass
class TextMessage:
    chat_id: str
    text: str
    sender_id: Optional[str] = None


@dataclass
class RenderRequested:
    chat_id: str


@dataclass
class OrientationChosen:
    chat_id: str
    mode: OrientationMode


@dataclass
class ResetRequested:
    chat_id: str
    sender_id: Optional[str] = None
    everything: bool = False


Event = Union[ImageArrived, TextMessage, RenderRequested, OrientationChosen, ResetRequested]
