#!/usr/bin/env python3
"""
ircharness Services Scenario Suite
AuthServ / ChanServ / OpServ interaction against a live network

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

from ircharness import TestRunner, create_test_client

# Services can take a while to answer under load
SERVICE_TIMEOUT = 10.0

runner = TestRunner("Services")


@runner.test("Can communicate with AuthServ")
async def test_authserv_help():
    client = runner.track(await create_test_client("authtest1"))

    client.say("AuthServ", "HELP")

    response = await client.wait_for_raw(re.compile(r"AuthServ.*NOTICE", re.I), SERVICE_TIMEOUT)
    assert response


@runner.test("Can communicate with ChanServ")
async def test_chanserv_help():
    client = runner.track(await create_test_client("chantest1"))

    client.say("ChanServ", "HELP")

    response = await client.wait_for_raw(re.compile(r"ChanServ.*NOTICE", re.I), SERVICE_TIMEOUT)
    assert response


@runner.test("Can register a channel with ChanServ")
async def test_chanserv_register():
    client = runner.track(await create_test_client("chanreg1"))

    # Join first to become op
    channel = f"#testchan{int(time.time() * 1000)}"
    client.join(channel)
    await client.wait_for_raw(re.compile(f"JOIN.*{re.escape(channel)}", re.I))

    # May be refused without an account; any answer proves the interaction
    client.say("ChanServ", f"REGISTER {channel}")

    response = await client.wait_for_raw(re.compile(r"ChanServ", re.I), SERVICE_TIMEOUT)
    assert response


@runner.test("Can query OpServ (may require oper)")
async def test_opserv_help():
    client = runner.track(await create_test_client("optest1"))

    client.say("OpServ", "HELP")

    # Help text or access denied, either is a response
    response = await client.wait_for_raw(re.compile(r"OpServ|NOTICE", re.I), SERVICE_TIMEOUT)
    assert response


if __name__ == "__main__":
    import sys
    sys.exit(0 if asyncio.run(runner.run_all()) else 1)
