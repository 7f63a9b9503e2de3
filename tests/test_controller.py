"""End-to-end tests for the session controller (fake Green API client and downloader)."""

from __future__ import annotations

import asyncio

from idrelay.controller import GENERIC_FAILURE, SessionController
from idrelay.errors import CapacityExceeded, DownloadError, IncompleteGroup, InsufficientInput, Unauthorized
from idrelay.events import ImageArrived, OrientationChosen, RenderRequested, ResetRequested, TextMessage
from idrelay.layout import FRONT_X_PT, BACK_X_PT, OrientationMode, layout_page
from idrelay.pairing import FRONT, build_pairs
from tests.conftest import CHAT, OPERATOR, OTHER_CHAT, BrokenComposer


def image(url, caption=None, chat=CHAT, **kw):
    return ImageArrived(chat_id=chat, download_url=url, caption=caption, **kw)


def text(body, chat=CHAT, sender=None):
    return TextMessage(chat_id=chat, text=body, sender_id=sender or chat)


def test_caption_front_back_then_render(controller, client, store):
    async def scenario():
        await controller.dispatch(image("https://x/a.jpg", caption="Front"))
        await controller.dispatch(image("https://x/b.jpg", caption="back side"))
        sess = store.get(CHAT)
        pairs = build_pairs(sess.groups).pairs
        placements = layout_page(pairs, OrientationMode.NORMAL)

        res = await controller.dispatch(RenderRequested(CHAT))
        assert len(res.pairs) == 1
        assert sess.pending_render_pairs == pairs
        pdf = await controller.dispatch(text("1"))
        return pairs, placements, pdf, sess

    pairs, placements, pdf, sess = asyncio.run(scenario())
    assert len(pairs) == 1
    a, b = pairs[0].front, pairs[0].back
    assert a.name.startswith("upload_001_") and b.name.startswith("upload_002_")
    front, back = placements
    assert (front.image_ref, front.box_x, front.row) == (a, FRONT_X_PT, 0)
    assert (back.image_ref, back.box_x, back.row) == (b, BACK_X_PT, 0)

    assert "FRONT #1" in client.texts()[0]
    assert "BACK #1" in client.texts()[1]
    assert pdf.pdf_path.read_bytes().startswith(b"%PDF")
    assert client.documents[0]["filename"] == "pub_1ids.pdf"
    assert client.last() == "✅ PDF generated with 1 ID(s)."
    # a completed render starts a fresh session
    assert sess.groups == [[]] and sess.pending_render_pairs is None


def test_label_command_waits_for_download(controller, client, fetcher, store):
    async def scenario():
        gate = fetcher.gate("https://x/a.jpg")
        arrival = asyncio.ensure_future(controller.dispatch(image("https://x/a.jpg")))
        await asyncio.sleep(0)
        label = asyncio.ensure_future(controller.dispatch(text("front")))
        for _ in range(3):
            await asyncio.sleep(0)
        assert not label.done()
        gate.set()
        await arrival
        return await label

    result = asyncio.run(scenario())
    assert result.entry.side == FRONT
    assert result.entry.sequence == 1
    assert (result.front_count, result.back_count) == (1, 0)
    assert any("FRONT #1" in t for t in client.texts())
    assert store.get(CHAT).fronts[0].storage_ref.exists()


def test_out_of_order_downloads_keep_arrival_order(controller, fetcher, store):
    async def scenario():
        g1 = fetcher.gate("https://x/1.jpg")
        g2 = fetcher.gate("https://x/2.jpg")
        t1 = asyncio.ensure_future(controller.dispatch(image("https://x/1.jpg")))
        await asyncio.sleep(0)
        t2 = asyncio.ensure_future(controller.dispatch(image("https://x/2.jpg")))
        await asyncio.sleep(0)
        g2.set()
        await t2
        label = asyncio.ensure_future(controller.dispatch(text("/front")))
        await asyncio.sleep(0)
        g1.set()
        await t1
        first = await label
        second = await controller.dispatch(text("/back"))
        return first, second

    first, second = asyncio.run(scenario())
    assert first.entry.sequence == 1
    assert second.entry.sequence == 2
    pairs = build_pairs(store.get(CHAT).groups).pairs
    assert pairs[0].front == first.entry.storage_ref
    assert pairs[0].back == second.entry.storage_ref


def test_capacity_is_reported_and_counts_stay(controller, client, store):
    async def scenario():
        for i in range(6):
            await controller.dispatch(image(f"https://x/{i}.jpg", caption="front"))

    asyncio.run(scenario())
    sess = store.get(CHAT)
    assert len(sess.fronts) == 5
    assert client.last() == CapacityExceeded("front", 5).message


def test_label_without_image(controller, client):
    res = asyncio.run(controller.dispatch(text("back")))
    assert res.__class__.__name__ == "NoPendingImage"
    assert client.last() == "Send an image first, then type front/back."


def test_free_text_separates_groups(controller, client, store):
    async def scenario():
        await controller.dispatch(image("https://x/f1.jpg", caption="front"))
        await controller.dispatch(image("https://x/b1.jpg", caption="back"))
        assert await controller.dispatch(text("next ID please")) == 1
        await controller.dispatch(image("https://x/f2.jpg", caption="front"))
        await controller.dispatch(image("https://x/b2.jpg", caption="back"))
        assert await controller.dispatch(text("/next")) == 2
        return await controller.dispatch(text("/status"))

    summary = asyncio.run(scenario())
    assert client.texts()[2] == "✅ Group #2 started."
    assert summary == [
        {"group": 1, "fronts": 1, "backs": 1},
        {"group": 2, "fronts": 1, "backs": 1},
    ]
    status = client.last()
    assert "ID Groups: 2" in status and "Current group: #3" in status
    assert len(build_pairs(store.get(CHAT).groups).pairs) == 2


def test_render_refused_for_incomplete_group(controller, client, store):
    async def scenario():
        await controller.dispatch(image("https://x/f1.jpg", caption="front"))
        await controller.dispatch(image("https://x/b1.jpg", caption="back"))
        await controller.dispatch(text("2"))
        await controller.dispatch(image("https://x/f2.jpg", caption="front"))
        return await controller.dispatch(text("/pdf"))

    res = asyncio.run(scenario())
    assert isinstance(res, IncompleteGroup)
    assert "missing a front or back" in client.last()
    assert store.get(CHAT).pending_render_pairs is None


def test_reset_then_render_is_insufficient(controller, client, store):
    async def scenario():
        await controller.dispatch(image("https://x/f1.jpg", caption="front"))
        await controller.dispatch(image("https://x/f2.jpg", caption="front"))
        await controller.dispatch(image("https://x/b1.jpg", caption="back"))
        assert store.get(CHAT).counts() == (2, 1)
        await controller.dispatch(ResetRequested(CHAT, sender_id=CHAT))
        return await controller.dispatch(RenderRequested(CHAT))

    res = asyncio.run(scenario())
    sess = store.get(CHAT)
    assert sess.counts() == (0, 0)
    assert sess.current_group_index == 0
    assert isinstance(res, InsufficientInput)
    assert "✅ Reset done." in client.texts()


def test_download_failure_is_reported_and_dropped(controller, client, store):
    async def scenario():
        return await controller.dispatch(image("fail://x/a.jpg"))

    res = asyncio.run(scenario())
    assert isinstance(res, DownloadError)
    assert client.last().startswith("Download failed after 3 attempts")
    assert len(store.get(CHAT).pending) == 0


def test_failed_caption_download_reports_download_error(controller, client, store):
    res = asyncio.run(controller.dispatch(image("fail://x/a.jpg", caption="front")))
    assert isinstance(res, DownloadError)
    assert store.get(CHAT).counts() == (0, 0)


def test_composer_failure_keeps_pairs(store, client, fetcher, ledger, storage):
    controller = SessionController(
        store=store, client=client, composer=BrokenComposer(storage),
        fetcher=fetcher, ledger=ledger, pdf_retention_seconds=None,
    )

    async def scenario():
        await controller.dispatch(image("https://x/a.jpg", caption="front"))
        await controller.dispatch(image("https://x/b.jpg", caption="back"))
        await controller.dispatch(text("/pdf"))
        return await controller.dispatch(OrientationChosen(CHAT, OrientationMode.REVERSED))

    assert asyncio.run(scenario()) is None
    sess = store.get(CHAT)
    assert "Failed to create the PDF" in client.last()
    assert sess.counts() == (1, 1)
    assert len(sess.pending_render_pairs) == 1
    assert client.documents == []


def test_orientation_menu_repeats_until_valid_choice(controller, client, store):
    async def scenario():
        await controller.dispatch(image("https://x/a.jpg", caption="front"))
        await controller.dispatch(image("https://x/b.jpg", caption="back"))
        await controller.dispatch(text("/pdf"))
        await controller.dispatch(text("hmm"))
        menu = client.last()
        await controller.dispatch(text("cancel"))
        return menu

    menu = asyncio.run(scenario())
    assert "Choose a layout" in menu and "Reply 1, 2 or 3" in menu
    sess = store.get(CHAT)
    # neither the unknown reply nor the cancel moved the group cursor
    assert sess.current_group_index == 0
    assert sess.pending_render_pairs is None
    assert client.last() == "Okay, canceled."


def test_choose_orientation_without_render_request(controller, client):
    res = asyncio.run(controller.dispatch(OrientationChosen(CHAT, OrientationMode.NORMAL)))
    assert isinstance(res, InsufficientInput)


def test_non_image_document_is_rejected(controller, client, fetcher):
    asyncio.run(controller.dispatch(image("https://x/report.pdf", file_name="report.pdf", mime_type="application/pdf")))
    assert client.last() == "Please send an image (png/jpg/webp)."
    assert fetcher.calls == []


def test_operator_only_commands(controller, client, store):
    async def scenario():
        store.get_or_create(OTHER_CHAT)
        a = await controller.dispatch(text("/resetall"))
        b = await controller.dispatch(text("/broadcast hello"))
        return a, b

    a, b = asyncio.run(scenario())
    assert isinstance(a, Unauthorized) and isinstance(b, Unauthorized)
    assert OTHER_CHAT in store.sessions


def test_operator_reset_all(controller, client, store, storage):
    async def scenario():
        await controller.dispatch(image("https://x/a.jpg", caption="front", chat=OTHER_CHAT))
        await controller.dispatch(text("/reset all", chat=OPERATOR))

    asyncio.run(scenario())
    assert store.sessions == {} or list(store.sessions) == [OPERATOR]
    assert not storage.chat_dir(OTHER_CHAT).exists()
    assert client.last(OPERATOR) == "✅ All sessions and stored files cleared."


def test_broadcast_reaches_known_chats(controller, client, ledger):
    async def scenario():
        await controller.dispatch(text("hello", chat=CHAT))
        await controller.dispatch(text("hi", chat=OTHER_CHAT))
        client.failing_chats.add(OTHER_CHAT)
        await controller.dispatch(text("/broadcast", chat=OPERATOR))
        return await controller.dispatch(text("Office closed on Monday", chat=OPERATOR))

    sent = asyncio.run(scenario())
    assert sent == 1
    assert client.last(CHAT) == "Office closed on Monday"
    assert ledger.all() == [CHAT, OTHER_CHAT, OPERATOR]
    assert "1 chat(s), 1 failed" in client.last(OPERATOR)


def test_start_resets_and_explains(controller, client, store):
    async def scenario():
        await controller.dispatch(image("https://x/a.jpg", caption="front"))
        await controller.dispatch(text("/start"))

    asyncio.run(scenario())
    assert store.get(CHAT).counts() == (0, 0)
    assert "/pdf" in client.last()


def test_send_failures_do_not_escape(controller, client):
    client.failing_chats.add(CHAT)
    assert asyncio.run(controller.dispatch(text("/help"))) is None


def test_unexpected_error_gets_generic_reply(controller, client, monkeypatch):
    def boom(*a, **kw):
        raise RuntimeError("disk full")

    monkeypatch.setattr(controller.store.storage, "image_path_for", boom)
    assert asyncio.run(controller.dispatch(image("https://x/a.jpg"))) is None
    assert client.last() == GENERIC_FAILURE


def test_refused_caption_is_not_taken_by_the_next_caption(controller, client, store, storage):
    async def scenario():
        for i in range(6):
            await controller.dispatch(image(f"https://x/f{i}.jpg", caption="front"))
        return await controller.dispatch(image("https://x/b.jpg", caption="back"))

    result = asyncio.run(scenario())
    sess = store.get(CHAT)
    assert result.entry.sequence == 7
    assert [e.sequence for e in sess.backs] == [7]
    assert [e.sequence for e in sess.fronts] == [1, 2, 3, 4, 5]
    assert len(sess.pending) == 0
    assert not list(storage.chat_dir(CHAT).glob("upload_006_*"))


def test_caption_labels_its_own_image(controller, client, store):
    async def scenario():
        await controller.dispatch(image("https://x/a.jpg"))
        captioned = await controller.dispatch(image("https://x/b.jpg", caption="front"))
        waiting = store.get(CHAT).pending.peek_sequences()
        manual = await controller.dispatch(text("back"))
        return captioned, waiting, manual

    captioned, waiting, manual = asyncio.run(scenario())
    assert captioned.entry.sequence == 2
    assert waiting == [1]
    assert manual.entry.sequence == 1 and manual.entry.side == "back"


def test_labels_after_pdf_request_are_rendered(controller, client, store):
    async def scenario():
        await controller.dispatch(image("https://x/a.jpg", caption="front"))
        await controller.dispatch(image("https://x/b.jpg", caption="back"))
        await controller.dispatch(text("/pdf"))
        await controller.dispatch(image("https://x/c.jpg", caption="front"))
        await controller.dispatch(image("https://x/d.jpg", caption="back"))
        return await controller.dispatch(text("1"))

    result = asyncio.run(scenario())
    assert result.pairs == 2
    assert client.documents[0]["filename"] == "pub_2ids.pdf"
    assert client.last() == "✅ PDF generated with 2 ID(s)."


def test_render_choice_refused_when_a_late_label_leaves_a_gap(controller, client, store):
    async def scenario():
        await controller.dispatch(image("https://x/a.jpg", caption="front"))
        await controller.dispatch(image("https://x/b.jpg", caption="back"))
        await controller.dispatch(text("/pdf"))
        await controller.dispatch(image("https://x/c.jpg", caption="front"))
        return await controller.dispatch(text("1"))

    res = asyncio.run(scenario())
    assert isinstance(res, IncompleteGroup)
    assert client.documents == []
    assert store.get(CHAT).counts() == (2, 1)


def test_help_explains_the_layout_menu(controller, client):
    asyncio.run(controller.dispatch(text("/help")))
    assert "use /next there to separate IDs" in client.last()


def test_reset_during_download_leaves_no_files(controller, client, fetcher, storage):
    async def scenario():
        gate = fetcher.gate("https://x/slow.jpg")
        arrival = asyncio.ensure_future(controller.dispatch(image("https://x/slow.jpg")))
        for _ in range(3):
            await asyncio.sleep(0)
        await controller.dispatch(ResetRequested(CHAT, sender_id=CHAT))
        gate.set()
        return await arrival

    assert asyncio.run(scenario()) is None
    assert not storage.chat_dir(CHAT).exists()
    assert client.texts() == ["✅ Reset done."]
