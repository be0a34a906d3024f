from __future__ import annotations

import asyncio
import os
import tempfile
import unittest
from pathlib import Path

from abusewatch.tail import LineFollower


class TestLineFollower(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "cowrie.json"
        self.path.write_bytes(b"")
        self.follower = LineFollower(self.path, from_start=True)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def append(self, data: bytes) -> None:
        with open(self.path, "ab") as fh:
            fh.write(data)

    def test_reads_appended_lines(self) -> None:
        self.append(b'{"a": 1}\n{"b": 2}\n')
        self.assertEqual(self.follower.poll(), ['{"a": 1}', '{"b": 2}'])
        self.assertEqual(self.follower.poll(), [])
        self.append(b"third\r\n")
        self.assertEqual(self.follower.poll(), ["third"])

    def test_partial_line_is_held_back(self) -> None:
        self.append(b'{"a": ')
        self.assertEqual(self.follower.poll(), [])
        self.append(b"1}\n")
        self.assertEqual(self.follower.poll(), ['{"a": 1}'])

    def test_truncation_restarts_from_zero(self) -> None:
        self.append(b"one\ntwo\nthree\n")
        self.assertEqual(len(self.follower.poll()), 3)

        self.path.write_bytes(b"new\n")
        self.assertEqual(self.follower.poll(), ["new"])
        self.append(b"more\n")
        self.assertEqual(self.follower.poll(), ["more"])

    def test_rotation_reopens_new_file(self) -> None:
        self.append(b"old\n")
        self.assertEqual(self.follower.poll(), ["old"])

        os.rename(self.path, self.path.with_suffix(".json.1"))
        self.assertEqual(self.follower.poll(), [])
        self.path.write_bytes(b"fresh line that is longer than the old file\n")
        self.assertEqual(self.follower.poll(), ["fresh line that is longer than the old file"])

    def test_invalid_utf8_is_replaced(self) -> None:
        self.append(b"bad \xff byte\n")
        self.assertEqual(self.follower.poll(), ["bad � byte"])


class TestLineFollowerAsync(unittest.IsolatedAsyncioTestCase):
    async def test_starts_at_end_and_waits_for_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "attackers.json"
            follower = LineFollower(path, poll_interval=0.01)
            seen: list[str] = []

            async def consume() -> None:
                async for line in follower:
                    seen.append(line)
                    follower.stop()

            task = asyncio.create_task(consume())
            await asyncio.sleep(0.05)
            path.write_bytes(b"history\n")
            await asyncio.sleep(0.05)
            with open(path, "ab") as fh:
                fh.write(b"live\n")
            await asyncio.wait_for(task, timeout=2.0)
            self.assertEqual(seen, ["live"])


if __name__ == "__main__":
    unittest.main()
