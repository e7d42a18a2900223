import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

from yarl import URL

from url_previewer.cache import MetadataCache
from url_previewer.config import PreviewerConfig
from url_previewer.fetcher import PreviewMetadata
from url_previewer.store import LinkageRecord
from url_previewer.worker import Worker

ROOM = "!room:example.org"


class FakeStore:
    """In-memory stand-in for LinkageStore."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], LinkageRecord] = {}

    async def lookup(self, room_id, event_id):
        return self.rows.get((room_id, event_id))

    async def upsert(self, room_id, event_id, response_id, redacted=False):
        self.rows[(room_id, event_id)] = LinkageRecord(
            room_id, event_id, response_id, redacted
        )


def _make_worker(pages=None, config=None):
    """Build a worker whose fetcher serves *pages* (url string -> metadata)."""
    pages = pages or {}
    config = config or PreviewerConfig()

    chat = MagicMock()
    chat.event_permalink.side_effect = lambda room_id, event_id: (
        f"https://matrix.to/#/{room_id}/{event_id}"
    )
    chat.send_notice = AsyncMock(return_value="$response")
    chat.edit_notice = AsyncMock()
    chat.redact = AsyncMock()

    fetcher = MagicMock()
    fetcher.rewrite.side_effect = lambda url: url
    fetcher.fetch = AsyncMock(side_effect=lambda url: pages.get(str(url)))
    fetcher.close = AsyncMock()

    store = FakeStore()
    worker = Worker(
        config,
        store,
        chat,
        cache=MetadataCache(config.cache_entries, config.cache_ttl),
        fetcher=fetcher,
    )
    return worker, chat, fetcher, store


class WorkerMessageTests(unittest.IsolatedAsyncioTestCase):
    async def test_no_urls_no_record_does_nothing(self):
        worker, chat, _, store = _make_worker()
        self.assertIsNone(await worker.on_message(ROOM, "$event", []))
        chat.send_notice.assert_not_awaited()
        self.assertEqual(store.rows, {})

    async def test_first_send_posts_placeholder_then_preview(self):
        pages = {"https://a.example/": PreviewMetadata(title="A page")}
        worker, chat, _, store = _make_worker(pages)

        response_id = await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
        self.assertEqual(response_id, "$response")
        self.assertEqual(store.rows[(ROOM, "$event")].response_id, "$response")

        chat.send_notice.assert_awaited_once()
        placeholder = chat.send_notice.await_args.args[1]
        self.assertEqual(placeholder.text, "(Loading…)")
        self.assertEqual(chat.send_notice.await_args.kwargs["reply_to"], "$event")
        self.assertIsNone(chat.send_notice.await_args.kwargs["thread_id"])

        await worker.wait_idle()
        chat.edit_notice.assert_awaited_once()
        room_id, target, body = chat.edit_notice.await_args.args
        self.assertEqual((room_id, target), (ROOM, "$response"))
        self.assertEqual(body.text, "A page")
        self.assertIn("https://matrix.to/#/!room:example.org/$event", body.html)

    async def test_threaded_source_gets_threaded_placeholder(self):
        worker, chat, _, _ = _make_worker()
        await worker.on_message(ROOM, "$event", [URL("https://a.example/")], "$root")
        self.assertEqual(chat.send_notice.await_args.kwargs["thread_id"], "$root")
        await worker.wait_idle()

    async def test_first_successful_candidate_wins(self):
        pages = {
            "https://b.example/": PreviewMetadata(title="B"),
            "https://c.example/": PreviewMetadata(title="C"),
        }
        worker, chat, fetcher, _ = _make_worker(pages)
        urls = [URL("https://a.example/"), URL("https://b.example/"), URL("https://c.example/")]

        with self.assertLogs("url_previewer.worker", level="WARNING"):
            await worker.on_message(ROOM, "$event", urls)
            await worker.wait_idle()

        self.assertEqual(chat.edit_notice.await_args.args[2].text, "B")
        fetched = [str(call.args[0]) for call in fetcher.fetch.await_args_list]
        self.assertEqual(fetched, ["https://a.example/", "https://b.example/"])

    async def test_no_preview_on_first_send_is_unavailable(self):
        worker, chat, _, _ = _make_worker()
        with self.assertLogs("url_previewer.worker", level="WARNING"):
            await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
            await worker.wait_idle()
        self.assertEqual(
            chat.edit_notice.await_args.args[2].text, "(URL preview is unavailable.)"
        )

    async def test_edit_reuses_response_and_suppresses_unavailable(self):
        pages = {"https://a.example/": PreviewMetadata(title="A")}
        worker, chat, _, _ = _make_worker(pages)
        await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
        await worker.wait_idle()
        chat.edit_notice.reset_mock()

        # Edited to a URL without a preview: the old preview stays.
        with self.assertLogs("url_previewer.worker", level="WARNING"):
            response_id = await worker.on_message(
                ROOM, "$event", [URL("https://broken.example/")]
            )
            await worker.wait_idle()
        self.assertEqual(response_id, "$response")
        chat.send_notice.assert_awaited_once()
        chat.edit_notice.assert_not_awaited()

    async def test_edit_updates_preview(self):
        pages = {
            "https://a.example/": PreviewMetadata(title="A"),
            "https://b.example/": PreviewMetadata(title="B"),
        }
        worker, chat, _, _ = _make_worker(pages)
        await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
        await worker.on_message(ROOM, "$event", [URL("https://b.example/")])
        await worker.wait_idle()
        chat.send_notice.assert_awaited_once()
        texts = [call.args[2].text for call in chat.edit_notice.await_args_list]
        self.assertEqual(sorted(texts), ["A", "B"])

    async def test_edit_without_urls_keeps_response(self):
        worker, chat, _, _ = _make_worker({"https://a.example/": PreviewMetadata(title="A")})
        await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
        await worker.wait_idle()
        chat.edit_notice.reset_mock()

        self.assertEqual(await worker.on_message(ROOM, "$event", []), "$response")
        await worker.wait_idle()
        chat.edit_notice.assert_not_awaited()

    async def test_candidates_are_capped(self):
        config = PreviewerConfig(max_urls_per_message=2)
        worker, _, fetcher, _ = _make_worker(config=config)
        urls = [URL(f"https://{i}.example/") for i in range(5)]
        with self.assertLogs("url_previewer.worker", level="WARNING"):
            await worker.on_message(ROOM, "$event", urls)
            await worker.wait_idle()
        self.assertEqual(fetcher.fetch.await_count, 2)

    async def test_fetches_are_cached(self):
        pages = {"https://a.example/": PreviewMetadata(title="A")}
        worker, _, fetcher, _ = _make_worker(pages)
        await worker.on_message(ROOM, "$one", [URL("https://a.example/")])
        await worker.on_message(ROOM, "$two", [URL("https://a.example/")])
        await worker.wait_idle()
        self.assertEqual(fetcher.fetch.await_count, 1)

    async def test_rewritten_url_is_fetched(self):
        pages = {"https://b.example/": PreviewMetadata(title="B")}
        worker, chat, fetcher, _ = _make_worker(pages)
        fetcher.rewrite.side_effect = lambda url: URL("https://b.example/")
        await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
        await worker.wait_idle()
        self.assertEqual(chat.edit_notice.await_args.args[2].text, "B")

    async def test_placeholder_failure_is_logged_and_not_recorded(self):
        worker, chat, _, store = _make_worker()
        chat.send_notice.side_effect = RuntimeError("M_FORBIDDEN")
        with self.assertLogs("url_previewer.worker", level="ERROR"):
            self.assertIsNone(
                await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
            )
        self.assertEqual(store.rows, {})

    async def test_edit_failure_is_contained(self):
        worker, chat, _, _ = _make_worker({"https://a.example/": PreviewMetadata(title="A")})
        chat.edit_notice.side_effect = RuntimeError("network down")
        with self.assertLogs("url_previewer.worker", level="ERROR"):
            await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
            await worker.wait_idle()

    async def test_persistence_failure_propagates(self):
        worker, _, _, store = _make_worker()
        store.lookup = AsyncMock(side_effect=RuntimeError("database is locked"))
        with self.assertRaises(RuntimeError):
            await worker.on_message(ROOM, "$event", [URL("https://a.example/")])


class WorkerDeletionTests(unittest.IsolatedAsyncioTestCase):
    async def test_deletion_without_record(self):
        worker, chat, _, _ = _make_worker()
        self.assertIsNone(await worker.on_deletion(ROOM, "$event"))
        chat.redact.assert_not_awaited()

    async def test_deletion_is_idempotent(self):
        worker, chat, _, store = _make_worker({"https://a.example/": PreviewMetadata(title="A")})
        await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
        await worker.wait_idle()

        self.assertEqual(await worker.on_deletion(ROOM, "$event"), "$response")
        self.assertIsNone(await worker.on_deletion(ROOM, "$event"))
        await worker.wait_idle()

        chat.redact.assert_awaited_once_with(ROOM, "$response")
        self.assertTrue(store.rows[(ROOM, "$event")].redacted)

    async def test_messages_after_deletion_are_ignored(self):
        worker, chat, _, _ = _make_worker({"https://a.example/": PreviewMetadata(title="A")})
        await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
        await worker.wait_idle()
        await worker.on_deletion(ROOM, "$event")
        await worker.wait_idle()
        chat.edit_notice.reset_mock()

        self.assertIsNone(
            await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
        )
        await worker.wait_idle()
        chat.send_notice.assert_awaited_once()
        chat.edit_notice.assert_not_awaited()

    async def test_redact_failure_is_logged(self):
        worker, chat, _, _ = _make_worker()
        await worker.store.upsert(ROOM, "$event", "$response")
        chat.redact.side_effect = RuntimeError("M_FORBIDDEN")
        with self.assertLogs("url_previewer.worker", level="ERROR"):
            self.assertEqual(await worker.on_deletion(ROOM, "$event"), "$response")
            await worker.wait_idle()


class WorkerCloseTests(unittest.IsolatedAsyncioTestCase):
    async def test_close_cancels_jobs_and_closes_fetcher(self):
        worker, _, fetcher, _ = _make_worker()

        async def hang(url):
            await asyncio.Event().wait()

        fetcher.fetch = AsyncMock(side_effect=hang)
        await worker.on_message(ROOM, "$event", [URL("https://a.example/")])
        await asyncio.sleep(0)
        await worker.close()
        self.assertEqual(worker._jobs, set())
        fetcher.close.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
