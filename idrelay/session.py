import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import CapacityExceeded, NoPendingImage
from .pairing import BACK, FRONT, GroupEntry, Pair
from .pending import PendingArrival, PendingArrivalQueue
from .storage import Storage

MAX_PER_SIDE = 5


@dataclass
class SideEntry:
    storage_ref: Path
    sequence: int


@dataclass
class LabelResult:
    front_count: int
    back_count: int
    entry: GroupEntry


# One record per chat. Groups are the single source of truth; the front/back
# collections are read from them so the two views cannot drift apart.
@dataclass
class Session:
    chat_id: str
    groups: List[List[GroupEntry]] = field(default_factory=lambda: [[]])
    current_group_index: int = 0
    pending: PendingArrivalQueue = field(default_factory=PendingArrivalQueue)
    label_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    pending_render_pairs: Optional[List[Pair]] = None
    awaiting_broadcast_text: bool = False
    last_image_ref: Optional[Path] = None
    last_sequence: int = 0
    generation: int = 0

    def next_sequence(self) -> int:
        self.last_sequence += 1
        return self.last_sequence

    def side_entries(self, side: str) -> List[SideEntry]:
        items = [SideEntry(e.storage_ref, e.sequence) for g in self.groups for e in g if e.side == side]
        items.sort(key=lambda x: x.sequence)
        return items

    @property
    def fronts(self) -> List[SideEntry]:
        return self.side_entries(FRONT)

    @property
    def backs(self) -> List[SideEntry]:
        return self.side_entries(BACK)

    def counts(self) -> Tuple[int, int]:
        return len(self.fronts), len(self.backs)

    def ensure_group(self) -> List[GroupEntry]:
        while len(self.groups) <= self.current_group_index:
            self.groups.append([])
        return self.groups[self.current_group_index]

    def clear(self):
        # the lock is kept: a label operation may be holding it right now
        self.groups = [[]]
        self.current_group_index = 0
        self.pending.clear()
        self.pending_render_pairs = None
        self.awaiting_broadcast_text = False
        self.last_image_ref = None
        self.last_sequence = 0
        self.generation += 1


class SessionStore:
    def __init__(self, storage: Storage):
        self.storage = storage
        self.sessions: Dict[str, Session] = {}

    def __contains__(self, chat_id: str) -> bool:
        return chat_id in self.sessions

    def get(self, chat_id: str) -> Optional[Session]:
        return self.sessions.get(chat_id)

    def get_or_create(self, chat_id: str) -> Session:
        sess = self.sessions.get(chat_id)
        if sess is None:
            sess = Session(chat_id=chat_id)
            self.sessions[chat_id] = sess
        return sess

    def reset(self, chat_id: str) -> Session:
        sess = self.get_or_create(chat_id)
        sess.clear()
        self.storage.delete_chat(chat_id)
        return sess

    def reset_all(self):
        """Operator reset: drop every session and everything under the storage root."""
        for sess in self.sessions.values():
            sess.clear()
        self.sessions.clear()
        self.storage.wipe()


async def label_pending(session: Session, side: str, item: Optional[PendingArrival] = None) -> LabelResult:
    """
    File a pending image as ``side`` in the current group.

    Without ``item`` the earliest pending image is taken; an image that arrived
    with its own caption passes its entry so the caption labels that image.
    Runs under the session's label lock, so two labels sent back to back apply in
    the order they were triggered.
    """
    if side not in (FRONT, BACK):
        raise ValueError(f"unknown side: {side}")
    async with session.label_lock:
        if len(session.side_entries(side)) >= MAX_PER_SIDE:
            raise CapacityExceeded(side, MAX_PER_SIDE)
        generation = session.generation
        if item is None:
            item = await session.pending.dequeue_next()
        else:
            item = await session.pending.take(item)
        if item is None or generation != session.generation:
            raise NoPendingImage()
        entry = GroupEntry(storage_ref=item.storage_ref, side=side, sequence=item.sequence)
        session.ensure_group().append(entry)
        if session.last_image_ref == item.storage_ref:
            session.last_image_ref = None
        front_count, back_count = session.counts()
        return LabelResult(front_count=front_count, back_count=back_count, entry=entry)


def advance_group(session: Session) -> int:
    session.current_group_index += 1
    session.ensure_group()
    return session.current_group_index
