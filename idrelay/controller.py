import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Set

from .errors import DownloadError, IncompleteGroup, InsufficientInput, NoPendingImage, RelayError, Unauthorized
from .events import Event, ImageArrived, OrientationChosen, RenderRequested, ResetRequested, TextMessage
from .layout import ORIENTATION_CHOICES, OrientationMode, layout_page, parse_orientation
from .ledger import KnownChats
from .logs import json_log
from .pairing import PairingResult, build_pairs, group_summary
from .pdf_packer import PDFComposer, PDFComposeResult
from .pending import PendingArrival
from .session import LabelResult, Session, SessionStore, advance_group, label_pending
from .storage import DOWNLOAD_ATTEMPTS, Storage
from .utils import image_extension, same_sender, side_from_caption, side_from_text

Fetcher = Callable[[str, Path], Awaitable[Path]]

HELP_TEXT = "\n".join([
    "✅ Send up to 10 images (5 IDs) with separators!",
    "",
    "📸 How to send images:",
    "",
    "Method 1 (Recommended): With caption",
    "• Send 2 images with captions 'Front' and 'Back'",
    "• Send ANY TEXT to separate IDs (e.g. 'next', 'ID2')",
    "• Send the next 2 images for the next ID",
    "",
    "Method 2: Manual tagging",
    "1) Send an image",
    "2) Type: front or back (or /front /back)",
    "3) Send ANY TEXT to separate IDs",
    "",
    "When done:",
    "📄 /pdf - generates the PDF with all IDs",
    "",
    "Commands:",
    "/status - check current progress",
    "/reset - clear all and start over",
    "/next - manually start the next ID group",
    "",
    "While the layout menu is open, replies other than 1, 2, 3 or cancel",
    "show the menu again; use /next there to separate IDs.",
])

GENERIC_FAILURE = "Sorry, something went wrong. Please try again."


class SessionController:
    """
    Turns inbound chat events into session changes and replies.

    Every handler catches RelayError and answers the chat with its message, so a
    bad event in one conversation never reaches the dispatcher.
    """

    def __init__(
        self,
        store: SessionStore,
        client: Any,
        composer: PDFComposer,
        fetcher: Fetcher,
        ledger: KnownChats,
        operator_id: Optional[str] = None,
        pdf_retention_seconds: Optional[int] = 10800,
    ):
        self.store = store
        self.client = client
        self.composer = composer
        self.fetcher = fetcher
        self.ledger = ledger
        self.operator_id = operator_id
        self.pdf_retention_seconds = pdf_retention_seconds
        self._background: Set[asyncio.Task] = set()

    @property
    def storage(self) -> Storage:
        return self.store.storage

    def is_operator(self, sender_id: Optional[str]) -> bool:
        return bool(self.operator_id) and same_sender(sender_id, self.operator_id)

    async def dispatch(self, event: Event) -> Any:
        chat_id = event.chat_id
        try:
            if self.ledger.add(chat_id):
                json_log("chat_registered", chat_id=chat_id, known=len(self.ledger))
            if isinstance(event, ImageArrived):
                return await self.on_image(event)
            if isinstance(event, TextMessage):
                return await self.on_text(event)
            if isinstance(event, RenderRequested):
                return await self.request_render(chat_id)
            if isinstance(event, OrientationChosen):
                return await self.choose_orientation(chat_id, event.mode)
            if isinstance(event, ResetRequested):
                return await self.reset(chat_id, event.sender_id, everything=event.everything)
            raise TypeError(f"unsupported event: {type(event).__name__}")
        except RelayError as e:
            json_log("relay_error", chat_id=chat_id, kind=type(e).__name__, error=e.message)
            await self._reply(chat_id, e.message)
            return e
        except Exception as e:
            json_log("handler_error", chat_id=chat_id, event=type(event).__name__, error=str(e))
            await self._reply(chat_id, GENERIC_FAILURE)
            return None

    async def _reply(self, chat_id: str, message: str):
        try:
            await self.client.send_message(chat_id=chat_id, message=message)
        except Exception as e:
            json_log("send_message_error", chat_id=chat_id, error=str(e))

    # --- images -------------------------------------------------------------

    async def on_image(self, event: ImageArrived) -> Optional[LabelResult]:
        chat_id = event.chat_id
        ext = image_extension(event.file_name, event.mime_type)
        if ext is None:
            await self._reply(chat_id, "Please send an image (png/jpg/webp).")
            return None

        # Nothing may await before the sequence number is taken: arrival order
        # is the order handlers start in.
        sess = self.store.get_or_create(chat_id)
        generation = sess.generation
        seq = sess.next_sequence()
        target = self.storage.image_path_for(chat_id, seq, ext)
        item = sess.pending.enqueue(target, seq, self.fetcher(event.download_url, target))
        sess.last_image_ref = target
        json_log("image_queued", chat_id=chat_id, seq=seq, pending=len(sess.pending))

        side = side_from_caption(event.caption)
        if side:
            try:
                result = await label_pending(sess, side, item=item)
            except NoPendingImage:
                if not await self._check_download(sess, item) or sess.generation != generation:
                    return None
                raise
            except RelayError:
                # a refused caption does not leave its image for the next label
                sess.pending.discard(target)
                self.storage.delete_path(target)
                raise
            await self._reply(chat_id, self._labeled_text(result))
            return result

        if not await self._check_download(sess, item) or sess.generation != generation:
            # the chat was reset while the image was downloading
            return None
        front_count, back_count = sess.counts()
        await self._reply(
            chat_id,
            f"Image received. Add caption 'Front' or 'Back', or type front/back. "
            f"Current: {front_count} fronts, {back_count} backs.",
        )
        return None

    async def _check_download(self, sess: Session, item: PendingArrival) -> bool:
        """False when the download was dropped by a reset rather than failed."""
        if item.task is None:
            return True
        try:
            await asyncio.shield(item.task)
        except asyncio.CancelledError:
            if not item.task.cancelled():
                raise
            return False
        except Exception as e:
            sess.pending.discard(item.storage_ref)
            if isinstance(e, DownloadError):
                raise
            raise DownloadError(DOWNLOAD_ATTEMPTS, e) from e
        return True

    # --- text ---------------------------------------------------------------

    async def on_text(self, event: TextMessage) -> Any:
        chat_id = event.chat_id
        text = (event.text or "").strip()
        low = text.lower()
        if not low:
            return None
        sess = self.store.get_or_create(chat_id)

        if sess.awaiting_broadcast_text and self.is_operator(event.sender_id) and not low.startswith("/"):
            return await self._broadcast(chat_id, text)

        if low.startswith("/"):
            return await self._command(sess, event, low)

        side = side_from_text(low)
        if side:
            return await self.label(chat_id, side)

        if sess.pending_render_pairs is not None:
            mode = parse_orientation(low)
            if mode is not None:
                return await self.choose_orientation(chat_id, mode)
            if low == "cancel":
                return await self._cancel(sess)
            await self._reply(chat_id, self._orientation_menu(len(sess.pending_render_pairs)))
            return None

        # any other text separates one ID from the next
        idx = advance_group(sess)
        await self._reply(chat_id, f"✅ Group #{idx + 1} started.")
        return idx

    async def _command(self, sess: Session, event: TextMessage, low: str) -> Any:
        chat_id = sess.chat_id
        parts = low.split(maxsplit=1)
        cmd = parts[0].split("@", 1)[0]

        if cmd in ("/start", "/help"):
            if cmd == "/start":
                self.store.reset(chat_id)
            await self._reply(chat_id, HELP_TEXT)
            return None
        if cmd in ("/front", "/back"):
            return await self.label(chat_id, cmd[1:])
        if cmd == "/next":
            idx = advance_group(sess)
            await self._reply(chat_id, f"✅ Group #{idx + 1} started.")
            return idx
        if cmd == "/status":
            return await self.status(chat_id)
        if cmd == "/pdf":
            return await self.request_render(chat_id)
        if cmd == "/reset":
            everything = len(parts) > 1 and parts[1].strip() == "all"
            return await self.reset(chat_id, event.sender_id, everything=everything)
        if cmd == "/resetall":
            return await self.reset(chat_id, event.sender_id, everything=True)
        if cmd == "/broadcast":
            if not self.is_operator(event.sender_id):
                raise Unauthorized()
            # keep the original casing of an inline message
            inline = (event.text or "").strip().split(maxsplit=1)
            if len(inline) > 1:
                return await self._broadcast(chat_id, inline[1])
            sess.awaiting_broadcast_text = True
            await self._reply(chat_id, "Send the message to broadcast, or /cancel.")
            return None
        if cmd == "/cancel":
            return await self._cancel(sess)
        await self._reply(chat_id, "Unknown command. Send /help for the list of commands.")
        return None

    async def _cancel(self, sess: Session):
        sess.pending_render_pairs = None
        sess.awaiting_broadcast_text = False
        await self._reply(sess.chat_id, "Okay, canceled.")

    # --- operations ---------------------------------------------------------

    async def label(self, chat_id: str, side: str) -> LabelResult:
        sess = self.store.get_or_create(chat_id)
        result = await label_pending(sess, side)
        json_log("image_labeled", chat_id=chat_id, side=side, seq=result.entry.sequence,
                 group=sess.current_group_index, fronts=result.front_count, backs=result.back_count)
        await self._reply(chat_id, self._labeled_text(result))
        return result

    @staticmethod
    def _labeled_text(result: LabelResult) -> str:
        side = result.entry.side
        n = result.front_count if side == "front" else result.back_count
        return (
            f"✅ {side.upper()} #{n}. Total: {result.front_count} fronts, "
            f"{result.back_count} backs. /pdf"
        )

    async def status(self, chat_id: str) -> List[dict]:
        sess = self.store.get_or_create(chat_id)
        summary = group_summary(sess.groups)
        lines = [
            "📊 Current Status:",
            "",
            f"🪪 ID Groups: {len(summary)}",
            f"🔄 Current group: #{sess.current_group_index + 1}",
        ]
        if len(sess.pending):
            lines.append(f"⏳ Unlabeled images: {len(sess.pending)}")
        lines.append("")
        for s in summary:
            lines.append(f"ID #{s['group']}: {s['fronts']} front(s), {s['backs']} back(s)")
        lines.append("")
        lines.append("💡 Send text to start the next ID, or /pdf to generate")
        await self._reply(chat_id, "\n".join(lines))
        return summary

    async def request_render(self, chat_id: str) -> PairingResult:
        sess = self.store.get_or_create(chat_id)
        result = build_pairs(sess.groups)
        if result.incomplete_groups:
            raise IncompleteGroup(result.incomplete_groups)
        if not result.pairs:
            raise InsufficientInput()
        sess.pending_render_pairs = list(result.pairs)
        json_log("render_requested", chat_id=chat_id, pairs=len(result.pairs))
        await self._reply(chat_id, self._orientation_menu(len(result.pairs)))
        return result

    @staticmethod
    def _orientation_menu(count: int) -> str:
        items = [f"{key}. {mode.label}" for key, mode in ORIENTATION_CHOICES.items()]
        return (
            f"Ready to create a PDF with {count} ID(s). Choose a layout:\n"
            + "\n".join(items)
            + "\nReply 1, 2 or 3 (or 'cancel'). Use /next to start another ID first."
        )

    async def choose_orientation(self, chat_id: str, mode: OrientationMode) -> Optional[PDFComposeResult]:
        sess = self.store.get_or_create(chat_id)
        if not sess.pending_render_pairs:
            raise InsufficientInput()
        # labels may have landed after /pdf; render what the groups hold now
        current = build_pairs(sess.groups)
        if current.incomplete_groups:
            raise IncompleteGroup(current.incomplete_groups)
        if not current.pairs:
            raise InsufficientInput()
        pairs = sess.pending_render_pairs = list(current.pairs)

        placements = layout_page(pairs, mode)
        count = len({p.row for p in placements})
        try:
            result = await asyncio.to_thread(self.composer.compose, placements, chat_id)
            await self.client.send_document(
                chat_id=chat_id,
                file_path=result.pdf_path,
                filename=f"pub_{count}ids.pdf",
                caption=f"PDF with {count} ID(s)",
            )
        except Exception as e:
            # pairs stay confirmed; the user can pick a layout again or resend /pdf
            json_log("render_failed", chat_id=chat_id, mode=OrientationMode(mode).value, error=str(e))
            await self._reply(chat_id, "Failed to create the PDF. Your images are kept, please try again.")
            return None

        json_log("render_sent", chat_id=chat_id, mode=OrientationMode(mode).value, pairs=count,
                 pdf=str(result.pdf_path))
        await self._reply(chat_id, f"✅ PDF generated with {count} ID(s).")
        self.store.reset(chat_id)
        if self.pdf_retention_seconds is not None:
            self._spawn(self._delete_files_after_delay([result.pdf_path, result.meta_path], self.pdf_retention_seconds))
        return result

    async def reset(self, chat_id: str, sender_id: Optional[str] = None, everything: bool = False):
        if everything:
            if not self.is_operator(sender_id):
                raise Unauthorized()
            self.store.reset_all()
            json_log("reset_all", by=sender_id)
            await self._reply(chat_id, "✅ All sessions and stored files cleared.")
            return
        self.store.reset(chat_id)
        json_log("session_reset", chat_id=chat_id)
        await self._reply(chat_id, "✅ Reset done.")

    async def _broadcast(self, chat_id: str, text: str) -> int:
        sess = self.store.get_or_create(chat_id)
        sess.awaiting_broadcast_text = False
        sent = failed = 0
        for target in self.ledger.all():
            if target == chat_id:
                continue
            try:
                await self.client.send_message(chat_id=target, message=text)
                sent += 1
            except Exception as e:
                failed += 1
                json_log("broadcast_send_error", chat_id=target, error=str(e))
        json_log("broadcast_done", sent=sent, failed=failed)
        await self._reply(chat_id, f"📣 Broadcast sent to {sent} chat(s), {failed} failed.")
        return sent

    # --- background ---------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any]):
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _delete_files_after_delay(self, paths: List[Path], delay_seconds: int):
        try:
            await asyncio.sleep(delay_seconds)
            for p in paths:
                self.storage.delete_path(Path(p))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("pdf_cleanup_error", error=str(e))
