import asyncio
import tempfile
import unittest

from url_previewer.edit_resolver import EditRaceResolver, Pending, Published
from url_previewer.errors import RaceSuperseded
from url_previewer.models import ChainKey
from url_previewer.reply_store import ReplyStore

from fakes import message

KEY = ChainKey("!room:hs", "$orig")


class EditRaceResolverTests(unittest.IsolatedAsyncioTestCase):
    async def test_original_opens_chain_once(self):
        resolver = EditRaceResolver()
        ticket = resolver.open_chain(message("$orig", "hi"))
        self.assertEqual((ticket.chain, ticket.seq), (KEY, 1))
        self.assertEqual(resolver.state(KEY), Pending(1))
        self.assertIsNone(resolver.open_chain(message("$orig", "hi")))

    async def test_edits_advance_sequence_and_void_older_tickets(self):
        resolver = EditRaceResolver()
        first = resolver.open_chain(message("$orig", "a", ts=1))
        second = resolver.advance(message("$e1", "b", ts=2, replaces="$orig"))
        self.assertEqual(second.seq, 2)
        self.assertFalse(resolver.is_current(first))
        self.assertTrue(resolver.is_current(second))

        with self.assertRaises(RaceSuperseded):
            async with resolver.publishing(first):
                self.fail("superseded ticket must not publish")

        async with resolver.publishing(second) as publication:
            self.assertIsNone(publication.reply_ref)
            publication.reply_ref = "$reply"
        self.assertEqual(resolver.state(KEY), Published(2, "$reply"))

    async def test_out_of_order_and_duplicate_edits_are_ignored(self):
        resolver = EditRaceResolver()
        resolver.open_chain(message("$orig", "a", ts=1))
        resolver.advance(message("$e2", "c", ts=3, replaces="$orig"))
        self.assertIsNone(resolver.advance(message("$e1", "b", ts=2, replaces="$orig")))
        self.assertIsNone(resolver.advance(message("$e2", "c", ts=3, replaces="$orig")))
        self.assertEqual(resolver.state(KEY), Pending(2))

    async def test_edits_with_equal_timestamps_keep_arrival_order(self):
        resolver = EditRaceResolver()
        resolver.open_chain(message("$orig", "a", ts=1))
        first = resolver.advance(message("$zzz", "b", ts=2, replaces="$orig"))
        second = resolver.advance(message("$aaa", "c", ts=2, replaces="$orig"))
        self.assertEqual((first.seq, second.seq), (2, 3))
        self.assertTrue(resolver.is_current(second))
        self.assertIsNone(resolver.advance(message("$zzz", "b", ts=2, replaces="$orig")))

    async def test_advance_rejects_original_messages(self):
        resolver = EditRaceResolver()
        resolver.open_chain(message("$orig", "a"))
        with self.assertRaises(ValueError):
            resolver.advance(message("$orig", "a"))

    async def test_published_ticket_cannot_publish_twice(self):
        resolver = EditRaceResolver()
        ticket = resolver.open_chain(message("$orig", "a"))
        async with resolver.publishing(ticket) as publication:
            publication.reply_ref = "$reply"
        with self.assertRaises(RaceSuperseded):
            async with resolver.publishing(ticket):
                pass
        self.assertEqual(resolver.state(KEY), Published(1, "$reply"))

    async def test_edit_of_unknown_event_is_a_no_op(self):
        resolver = EditRaceResolver()
        self.assertIsNone(resolver.advance(message("$e1", "b", replaces="$never-seen")))
        self.assertEqual(len(resolver), 0)

    async def test_edit_arriving_mid_publish_stays_pending(self):
        resolver = EditRaceResolver()
        first = resolver.open_chain(message("$orig", "a", ts=1))
        async with resolver.publishing(first) as publication:
            second = resolver.advance(message("$e1", "b", ts=2, replaces="$orig"))
            publication.reply_ref = "$reply"
        self.assertEqual(resolver.state(KEY), Pending(2))
        async with resolver.publishing(second) as publication:
            self.assertEqual(publication.reply_ref, "$reply")

    async def test_publishing_is_serialized_per_chain(self):
        resolver = EditRaceResolver()
        first = resolver.open_chain(message("$orig", "a", ts=1))
        order = []
        release = asyncio.Event()

        async def slow_publish():
            async with resolver.publishing(first) as publication:
                order.append("first-start")
                await release.wait()
                publication.reply_ref = "$reply"
                order.append("first-end")

        task = asyncio.create_task(slow_publish())
        await asyncio.sleep(0)
        second = resolver.advance(message("$e1", "b", ts=2, replaces="$orig"))

        async def second_publish():
            async with resolver.publishing(second) as publication:
                order.append(f"second:{publication.reply_ref}")

        other = asyncio.create_task(second_publish())
        await asyncio.sleep(0)
        release.set()
        await asyncio.gather(task, other)
        self.assertEqual(order, ["first-start", "first-end", "second:$reply"])

    async def test_chain_table_is_bounded(self):
        resolver = EditRaceResolver(max_chains=2)
        for n in range(3):
            resolver.open_chain(message(f"$m{n}", "x"))
        self.assertEqual(len(resolver), 2)
        self.assertIsNone(resolver.state(ChainKey("!room:hs", "$m0")))


class EditRaceResolverPersistenceTests(unittest.IsolatedAsyncioTestCase):
    async def test_reply_is_persisted_and_recovered_after_restart(self):
        with tempfile.TemporaryDirectory() as td:
            store = ReplyStore(td)
            resolver = EditRaceResolver(store)
            ticket = resolver.open_chain(message("$orig", "a"))
            async with resolver.publishing(ticket) as publication:
                publication.reply_ref = "$reply"
            self.assertEqual(store.get("!room:hs", "$orig"), "$reply")

            restarted = EditRaceResolver(ReplyStore(td))
            ticket = restarted.advance(message("$e1", "b", ts=5, replaces="$orig"))
            self.assertEqual(ticket.seq, 1)
            async with restarted.publishing(ticket) as publication:
                self.assertEqual(publication.reply_ref, "$reply")
                publication.reply_ref = None
            self.assertIsNone(ReplyStore(td).get("!room:hs", "$orig"))

    async def test_close_chain_returns_reply_and_forgets(self):
        with tempfile.TemporaryDirectory() as td:
            store = ReplyStore(td)
            resolver = EditRaceResolver(store)
            ticket = resolver.open_chain(message("$orig", "a"))
            async with resolver.publishing(ticket) as publication:
                publication.reply_ref = "$reply"

            self.assertEqual(await resolver.close_chain("!room:hs", "$orig"), "$reply")
            self.assertIsNone(resolver.state(KEY))
            self.assertIsNone(store.get("!room:hs", "$orig"))
            self.assertIsNone(await resolver.close_chain("!room:hs", "$orig"))

    async def test_close_chain_waits_for_publish_in_progress(self):
        resolver = EditRaceResolver()
        ticket = resolver.open_chain(message("$orig", "a"))
        release = asyncio.Event()

        async def publish():
            async with resolver.publishing(ticket) as publication:
                await release.wait()
                publication.reply_ref = "$late-reply"

        task = asyncio.create_task(publish())
        await asyncio.sleep(0)
        closing = asyncio.create_task(resolver.close_chain("!room:hs", "$orig"))
        await asyncio.sleep(0)
        self.assertFalse(resolver.is_current(ticket))
        release.set()
        await task
        self.assertEqual(await closing, "$late-reply")
