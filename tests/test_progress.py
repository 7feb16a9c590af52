import asyncio
import unittest

from tasksync.models import ImportProgressSnapshot, ImportStatus
from tasksync.progress import ProgressChannel


def snap(status=ImportStatus.RUNNING, **kwargs):
    return ImportProgressSnapshot(resource="tasks", status=status, **kwargs)


class TestProgressChannel(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.channel = ProgressChannel(snap(ImportStatus.IDLE))

    async def test_replay_latest(self):
        subscription = self.channel.subscribe()
        first = await subscription.__anext__()
        self.assertEqual(first.status, ImportStatus.IDLE)

    async def test_slow_subscriber_sees_latest_only(self):
        subscription = self.channel.subscribe(replay=False)
        for n in range(5):
            self.channel.publish(snap(records_imported=n))
        latest = await subscription.__anext__()
        self.assertEqual(latest.records_imported, 4)

    async def test_until_terminal_ends_iteration(self):
        subscription = self.channel.subscribe(replay=False, until_terminal=True)

        async def producer():
            await asyncio.sleep(0)
            self.channel.publish(snap(records_imported=1))
            await asyncio.sleep(0)
            self.channel.publish(snap(ImportStatus.COMPLETED, records_imported=2))

        task = asyncio.create_task(producer())
        received = [s async for s in subscription]
        await task
        self.assertEqual(received[-1].status, ImportStatus.COMPLETED)
        self.assertEqual(self.channel.subscriber_count, 0)

    async def test_terminal_snapshot_releases_unread_subscription(self):
        self.channel.subscribe(replay=False, until_terminal=True)
        self.channel.subscribe(replay=False)
        self.channel.publish(snap(records_imported=1))
        self.assertEqual(self.channel.subscriber_count, 2)

        self.channel.publish(snap(ImportStatus.PAUSED))
        self.assertEqual(self.channel.subscriber_count, 1)

    async def test_close_stops_iteration(self):
        subscription = self.channel.subscribe(replay=False)

        async def closer():
            await asyncio.sleep(0)
            subscription.close()

        task = asyncio.create_task(closer())
        received = [s async for s in subscription]
        await task
        self.assertEqual(received, [])
        self.assertEqual(self.channel.subscriber_count, 0)

    async def test_listener_failure_is_contained(self):
        calls = []

        def broken(_snapshot):
            raise ValueError("nope")

        self.channel.add_listener(broken)
        self.channel.add_listener(calls.append)
        with self.assertLogs("tasksync.progress", level="ERROR"):
            self.channel.publish(snap(records_imported=3))
        self.assertEqual(len(calls), 1)
        self.assertEqual(self.channel.latest.records_imported, 3)

        self.channel.remove_listener(broken)
        self.channel.publish(snap(records_imported=4))
        self.assertEqual(len(calls), 2)


if __name__ == '__main__':
    unittest.main()
