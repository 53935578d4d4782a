import asyncio
import json
import os
import tempfile
import unittest

from url_previewer.reply_store import ReplyStore


class ReplyStoreTests(unittest.IsolatedAsyncioTestCase):
    async def test_put_get_remove(self):
        with tempfile.TemporaryDirectory() as td:
            store = ReplyStore(os.path.join(td, "replies"))
            self.assertIsNone(store.get("!room:hs", "$a"))
            await store.put("!room:hs", "$a", "$reply-a")
            await store.put("!room:hs", "$b", "$reply-b")
            await store.put("!other:hs", "$a", "$reply-other")

            self.assertEqual(store.get("!room:hs", "$a"), "$reply-a")
            self.assertEqual(store.get("!other:hs", "$a"), "$reply-other")

            await store.remove("!room:hs", "$a")
            self.assertIsNone(store.get("!room:hs", "$a"))
            self.assertEqual(store.get("!room:hs", "$b"), "$reply-b")

            reopened = ReplyStore(os.path.join(td, "replies"))
            self.assertIsNone(reopened.get("!room:hs", "$a"))
            self.assertEqual(reopened.get("!room:hs", "$b"), "$reply-b")

    async def test_corrupt_file_reads_as_empty(self):
        with tempfile.TemporaryDirectory() as td:
            store = ReplyStore(td)
            with open(store._path("!room:hs"), "w", encoding="utf-8") as fh:
                fh.write("{not json")
            with self.assertLogs("url_previewer.reply_store", level="WARNING"):
                self.assertIsNone(store.get("!room:hs", "$a"))
            await store.put("!room:hs", "$a", "$reply")
            self.assertEqual(ReplyStore(td).get("!room:hs", "$a"), "$reply")

    async def test_concurrent_writes_keep_every_reply(self):
        with tempfile.TemporaryDirectory() as td:
            store = ReplyStore(td)
            await asyncio.gather(
                *(store.put("!room:hs", f"$m{n}", f"$reply{n}") for n in range(20))
            )
            with open(store._path("!room:hs"), "r", encoding="utf-8") as fh:
                saved = json.load(fh)["replies"]
            self.assertEqual(saved, {f"$m{n}": f"$reply{n}" for n in range(20)})

    async def test_rooms_are_read_from_disk_once(self):
        with tempfile.TemporaryDirectory() as td:
            store = ReplyStore(td)
            self.assertIsNone(store.get("!room:hs", "$a"))
            with open(store._path("!room:hs"), "w", encoding="utf-8") as fh:
                json.dump({"replies": {"$a": "$written-elsewhere"}}, fh)
            self.assertIsNone(store.get("!room:hs", "$a"))
