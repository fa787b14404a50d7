#!/usr/bin/env python3
"""
ircharness Connection Scenario Suite
Registration, channels, messaging and nick changes against a live server

Copyright (C) 2026 ircharness Project

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import asyncio
import re
import time

from ircharness import RawTimeout, TestRunner, create_test_client

runner = TestRunner("IRC Connection")


@runner.test("Can connect to the IRC server")
async def test_connect():
    client = runner.track(await create_test_client("testuser1"))

    # If we get here, connection succeeded
    assert client.registered, f"Unexpected state {client.state.value}"


@runner.test("Receives welcome message on connect")
async def test_welcome():
    client = runner.track(await create_test_client("testuser2"))

    # 001 (RPL_WELCOME) is what completes registration, so it is buffered already
    assert any("001" in line for line in client.raw_messages), "No 001 in raw buffer"
    welcome = await client.wait_for_raw(r" 001 ")
    assert "testuser2" in welcome


@runner.test("Can join a channel")
async def test_join():
    client = runner.track(await create_test_client("testuser3"))

    client.join("#test")

    join_msg = await client.wait_for_raw(re.compile(r"JOIN.*#test", re.I))
    assert "#test" in join_msg


@runner.test("Can send and receive messages in a channel")
async def test_channel_message():
    client1 = runner.track(await create_test_client("sender1"))
    client2 = runner.track(await create_test_client("receiver1"))

    client1.join("#msgtest")
    client2.join("#msgtest")

    await client1.wait_for_raw(re.compile(r"JOIN.*#msgtest", re.I))
    await client2.wait_for_raw(re.compile(r"JOIN.*#msgtest", re.I))

    # Small delay to ensure channel state is synced
    await asyncio.sleep(0.5)

    test_message = f"Hello from test {int(time.time() * 1000)}"
    client1.say("#msgtest", test_message)

    received = await client2.wait_for_raw(re.escape(test_message))
    assert test_message in received
    assert "sender1" in received, f"Sender missing from: {received}"


@runner.test("Can change nickname")
async def test_nick_change():
    client = runner.track(await create_test_client("oldnick1"))

    client.nick("newnick1")

    nick_msg = await client.wait_for_raw(re.compile(r"NICK.*newnick1", re.I))
    assert "newnick1" in nick_msg


@runner.test("Unmatched pattern times out with recent traffic")
async def test_raw_timeout():
    client = runner.track(await create_test_client("timeout1"))

    try:
        await client.wait_for_raw(r"nonexistent-pattern", timeout=1.0)
    except RawTimeout as e:
        assert e.pattern == "nonexistent-pattern"
        assert e.recent, "Timeout carried no buffered lines"
    else:
        raise AssertionError("wait_for_raw matched a nonexistent pattern")

    # Still usable after a failed wait
    client.raw("PING :still-here")
    await client.wait_for_raw(r"PONG.*still-here")


if __name__ == "__main__":
    import sys
    sys.exit(0 if asyncio.run(runner.run_all()) else 1)
