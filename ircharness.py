#!/usr/bin/env python3
"""
ircharness - Async IRC Test Harness

Drives an IRC server from automated test scenarios: connects simulated users,
sends protocol commands, and waits for the server's asynchronous, unordered
replies with timeouts and self-diagnosing failures.

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

# Version info - updated with each release
__version__ = "1.0.0"
__version_label__ = "ircharness"

import asyncio
import enum
import json
import logging
import logging.handlers
import os
import re
import sys
import time
import traceback
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Union

from ircconnection import EventEmitter, IRCConnection, RawEvent, Subscription

# ==============================================================================
# LOGGING SETUP
# ==============================================================================

def setup_logging(log_file=None, log_level='INFO'):
    """
    Configure logging for a harness run.

    Args:
        log_file: Optional path to a rotating log file (stdout is always used)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    fmt = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        try:
            # Rotating file handler: 10MB max, keep 5 backups
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=10*1024*1024,  # 10MB
                backupCount=5,
                encoding='utf-8'
            )
            handlers.append(file_handler)
        except OSError as e:
            print(f"Warning: Could not create log file {log_file}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=handlers,
        force=True  # Override any existing configuration
    )

    return logging.getLogger('ircharness')


logger = logging.getLogger('ircharness')

# ==============================================================================
# CONFIGURATION CLASS
# ==============================================================================


class HarnessConfig:
    DEFAULT = {
        "server": {
            "host": "nefarious",
            "port": 6667,
            "tls": False,
            "tls_verify": False,  # Test servers usually run self-signed certs
            "transport": "tcp",  # tcp, websocket
            "ws_url": None,  # e.g. ws://127.0.0.1:8765 for the webchat gateway
            "password": None
        },
        "client": {
            "gecos": "Test Client",
            "auto_reconnect": False
        },
        "timeouts": {
            "connect": 10.0,  # Registration deadline
            "wait": 5.0,  # Default for wait_for_event / wait_for_raw
            "test": 30.0,  # Per scenario, IRC operations can be slow
            "hook": 30.0  # Per cleanup pass
        },
        "diagnostics": {
            "recent_lines": 20  # Trailing lines quoted in RawTimeout messages
        },
        "logging": {
            "level": "INFO",
            "file": None
        }
    }

    ENVIRONMENT = {
        "IRC_HOST": ("server", "host", str),
        "IRC_PORT": ("server", "port", int),
    }

    def __init__(self, config_file="ircharness_config.json"):
        self.config_file = config_file
        self.data = self._deep_copy(self.DEFAULT)
        self.load()
        self.apply_environment()

    def _deep_copy(self, d):
        if isinstance(d, dict):
            return {k: self._deep_copy(v) for k, v in d.items()}
        return d

    def load(self):
        if not self.config_file or not Path(self.config_file).exists():
            return False
        try:
            with open(self.config_file, 'r') as f:
                loaded = json.load(f)
            self._merge(self.data, loaded)
            logger.info(f"Loaded config from {self.config_file}")
            return True
        except (OSError, ValueError) as e:
            logger.error(f"Config error in {self.config_file}: {e}")
            return False

    def save(self):
        try:
            with open(self.config_file, 'w') as f:
                json.dump(self.data, f, indent=2)
            logger.info(f"Config saved to {self.config_file}")
            return True
        except OSError as e:
            logger.error(f"Save error: {e}")
            return False

    def apply_environment(self, environ=None):
        """Override server settings from IRC_HOST / IRC_PORT."""
        environ = os.environ if environ is None else environ
        for var, (section, key, cast) in self.ENVIRONMENT.items():
            if environ.get(var):
                try:
                    self.set(section, key, value=cast(environ[var]))
                except ValueError:
                    logger.error(f"Ignoring invalid {var}={environ[var]!r}")

    def _merge(self, base, override):
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._merge(base[key], value)
            else:
                base[key] = value

    def get(self, *path, default=None):
        value = self.data
        for key in path:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, *path, value):
        """Set a configuration value by path. Returns True on success."""
        if not path:
            return False
        current = self.data
        for key in path[:-1]:
            if key not in current or not isinstance(current[key], dict):
                current[key] = {}
            current = current[key]
        current[path[-1]] = value
        return True

    def get_section(self, section):
        """Get all keys in a section."""
        return self.data.get(section, {})


CONFIG = HarnessConfig()

# ==============================================================================
# ERRORS
# ==============================================================================


class HarnessError(Exception):
    """Base class for every failure raised by the harness"""


class WaitTimeout(HarnessError, TimeoutError):
    """A deadline elapsed before the awaited outcome"""


class ConnectTimeout(WaitTimeout):
    def __init__(self, host, port, timeout):
        self.host = host
        self.port = port
        self.timeout = timeout
        super().__init__(f"Connection timeout to {host}:{port} after {timeout:g}s")


class ClosedBeforeRegistration(HarnessError):
    def __init__(self, host, port, error=None):
        self.host = host
        self.port = port
        self.error = error
        msg = f"Connection closed before registration ({host}:{port})"
        if error:
            msg += f": {error}"
        super().__init__(msg)


class EventTimeout(WaitTimeout):
    def __init__(self, event, timeout):
        self.event = event
        self.timeout = timeout
        super().__init__(f"Timeout waiting for event: {event} ({timeout:g}s)")


class RawTimeout(WaitTimeout):
    def __init__(self, pattern, timeout, recent):
        self.pattern = pattern
        self.timeout = timeout
        self.recent = list(recent)
        received = '\n'.join(self.recent) if self.recent else '(nothing)'
        super().__init__(
            f"Timeout waiting for raw pattern: {pattern} ({timeout:g}s)\n"
            f"Received:\n{received}"
        )


class WaitCancelled(HarnessError):
    """A pending wait was abandoned because its client closed"""

# ==============================================================================
# LINE BUFFER
# ==============================================================================


class LineBuffer:
    """Append-only log of inbound lines in arrival order"""

    def __init__(self):
        self._lines: List[str] = []

    def append(self, line: str):
        self._lines.append(line)

    def snapshot(self) -> List[str]:
        """Independent copy; later appends do not show up in it."""
        return list(self._lines)

    def tail(self, count: int) -> List[str]:
        if count <= 0:
            return []
        return self._lines[-count:]

    def clear(self):
        self._lines = []

    def __len__(self):
        return len(self._lines)

# ==============================================================================
# DEADLINES AND PENDING WAITS
# ==============================================================================


class Deadline:
    """One-shot timer with its remaining time and a cancel handle"""

    def __init__(self, timeout: float, callback: Callable[[], None], loop=None):
        self.loop = loop or asyncio.get_running_loop()
        self.timeout = timeout
        self.expires_at = self.loop.time() + timeout
        self.expired = False
        self._callback = callback
        self._handle = self.loop.call_later(max(timeout, 0), self._fire)

    def _fire(self):
        self._handle = None
        self.expired = True
        self._callback()

    @property
    def active(self) -> bool:
        return self._handle is not None

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.loop.time())

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class PendingWait:
    """
    One outstanding expectation: listeners, a deadline and a future that
    settles exactly once. Settling releases every listener and the deadline
    synchronously, so a late event or a late timer can never act twice.
    """

    def __init__(self, description: str, loop=None):
        self.description = description
        self.loop = loop or asyncio.get_running_loop()
        self.future = self.loop.create_future()
        self.subscriptions: List[Subscription] = []
        self.deadline: Optional[Deadline] = None

    def listen(self, emitter: EventEmitter, event: str, handler: Callable):
        self.subscriptions.append(emitter.on(event, handler))

    def expire_in(self, timeout: float, make_error: Callable[[], BaseException]):
        self.deadline = Deadline(timeout, lambda: self.fail(make_error()), self.loop)

    @property
    def settled(self) -> bool:
        return self.future.done()

    def resolve(self, value=None) -> bool:
        if self.future.done():
            return False
        self.release()
        self.future.set_result(value)
        return True

    def fail(self, error: BaseException) -> bool:
        if self.future.done():
            return False
        self.release()
        self.future.set_exception(error)
        return True

    def release(self):
        for sub in self.subscriptions:
            sub.cancel()
        if self.deadline is not None:
            self.deadline.cancel()

    def __repr__(self):
        return f"<PendingWait {self.description!r} settled={self.settled}>"


NO_MATCH = object()

# ==============================================================================
# WAIT ENGINE
# ==============================================================================


class WaitEngine:
    """Races a predicate over events (and buffered history) against a deadline"""

    def __init__(self, emitter: EventEmitter, buffer: LineBuffer,
                 default_timeout: float = 5.0, recent_lines: int = 20):
        self.emitter = emitter
        self.buffer = buffer
        self.default_timeout = default_timeout
        self.recent_lines = recent_lines
        self.pending = set()
        self.closed_reason = None

    async def await_first(self, event: str, predicate: Callable, timeout: Optional[float] = None,
                          on_timeout: Optional[Callable[[], BaseException]] = None,
                          history: Iterable = (), extract: Optional[Callable] = None,
                          description: Optional[str] = None):
        """
        Return the first value satisfying predicate, looking at history
        first and then at future emissions of event.

        extract maps an event payload to the value tested (NO_MATCH skips
        it). on_timeout builds the error raised when the deadline fires.
        """
        if timeout is None:
            timeout = self.default_timeout
        description = description or event

        # No suspension point between the history scan and the subscription
        # below, so nothing can arrive in between unseen.
        for value in history:
            if predicate(value):
                return value

        if self.closed_reason is not None:
            raise WaitCancelled(f"Wait for {description} cancelled: {self.closed_reason}")

        wait = PendingWait(description)

        def on_event(payload):
            value = extract(payload) if extract else payload
            if value is not NO_MATCH and predicate(value):
                wait.resolve(value)

        def expired():
            logger.warning(f"Wait for {description} timed out after {timeout:g}s")
            if on_timeout is not None:
                return on_timeout()
            return WaitTimeout(f"Timeout waiting for {description} ({timeout:g}s)")

        wait.listen(self.emitter, event, on_event)
        wait.expire_in(timeout, expired)
        self.pending.add(wait)
        try:
            return await wait.future
        finally:
            wait.release()
            self.pending.discard(wait)

    async def wait_for_event(self, event: str, timeout: Optional[float] = None):
        """Wait for the next emission of a named event and return its payload."""
        if timeout is None:
            timeout = self.default_timeout
        return await self.await_first(
            event, lambda payload: True, timeout,
            on_timeout=lambda: EventTimeout(event, timeout),
            description=f"event {event}"
        )

    async def wait_for_raw(self, pattern: Union[str, Pattern], timeout: Optional[float] = None) -> str:
        """Wait for the first inbound line, buffered or future, matching pattern."""
        if timeout is None:
            timeout = self.default_timeout
        regex = pattern if isinstance(pattern, re.Pattern) else re.compile(pattern)

        def matches(line):
            return regex.search(line) is not None

        def inbound_line(event: RawEvent):
            return event.line if event.from_server else NO_MATCH

        return await self.await_first(
            'raw', matches, timeout,
            on_timeout=lambda: RawTimeout(regex.pattern, timeout, self.buffer.tail(self.recent_lines)),
            history=self.buffer.snapshot(),
            extract=inbound_line,
            description=f"raw pattern {regex.pattern}"
        )

    def close(self, reason: str):
        """Fail every pending wait with WaitCancelled and refuse new live waits."""
        if self.closed_reason is None:
            self.closed_reason = reason
        for wait in list(self.pending):
            if wait.fail(WaitCancelled(f"Wait for {wait.description} cancelled: {reason}")):
                logger.debug(f"Cancelled {wait.description}: {reason}")

# ==============================================================================
# CONNECTION LIFECYCLE
# ==============================================================================


class ConnectionState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    REGISTERED = "registered"
    CLOSED = "closed"


class ConnectionLifecycle:
    """
    Idle -> Connecting -> Registered -> Closed, with Connecting -> Closed when
    the transport closes, the deadline passes or the client quits before
    registration. Nothing leaves Closed.

    When 'registered' and 'close' land in the same loop turn, whichever the
    connection emits first decides connect()'s outcome.
    """

    def __init__(self, connection: EventEmitter, connect_timeout: float = 10.0):
        self.connection = connection
        self.connect_timeout = connect_timeout
        self.state = ConnectionState.IDLE
        self._connecting: Optional[PendingWait] = None
        self._target = (None, None)
        connection.on('close', self._on_close)

    def _on_close(self, payload=None):
        self.mark_closed(payload.get('error') if isinstance(payload, dict) else None)

    def mark_closed(self, error=None):
        """Enter Closed; a connect() still waiting for registration fails."""
        if self.state is ConnectionState.CLOSED:
            return
        logger.debug(f"Connection state {self.state.value} -> closed")
        self.state = ConnectionState.CLOSED
        if self._connecting is not None:
            self._connecting.fail(ClosedBeforeRegistration(*self._target, error))

    async def connect(self, options: Dict):
        if self.state is not ConnectionState.IDLE:
            raise HarnessError(f"Cannot connect from state '{self.state.value}'")
        host, port = options.get('host'), options.get('port')
        wait = PendingWait(f"registration with {host}:{port}")

        def on_registered(payload=None):
            if self.state is ConnectionState.CONNECTING and wait.resolve(payload):
                self.state = ConnectionState.REGISTERED

        wait.listen(self.connection, 'registered', on_registered)
        wait.expire_in(self.connect_timeout, lambda: ConnectTimeout(host, port, self.connect_timeout))

        self._target = (host, port)
        self._connecting = wait
        self.state = ConnectionState.CONNECTING
        try:
            self.connection.connect(options)
            await wait.future
        except BaseException:
            self.mark_closed()
            self.connection.close()
            raise
        finally:
            self._connecting = None
            wait.release()
        logger.info(f"Registered as {options.get('nick')} on {host}:{port}")


# ==============================================================================
# TEST CLIENT
# ==============================================================================


class TestIRCClient:
    """
    One simulated user: a connection, its line buffer and the wait helpers.

    Inspired by ZNC's ReadUntil pattern: wait_for_raw() checks the lines that
    already arrived before listening for new ones, so a reply that beats the
    wait call is still found.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, connection=None, config=None):
        self.config = config or CONFIG
        self.connection = connection if connection is not None else IRCConnection()
        self.buffer = LineBuffer()
        self.lifecycle = ConnectionLifecycle(
            self.connection,
            connect_timeout=self.config.get('timeouts', 'connect', default=10.0)
        )
        self.waits = WaitEngine(
            self.connection, self.buffer,
            default_timeout=self.config.get('timeouts', 'wait', default=5.0),
            recent_lines=self.config.get('diagnostics', 'recent_lines', default=20)
        )

        # Registered before any wait so every line is buffered before it is matched
        self.connection.on('raw', self._on_raw)
        self.connection.on('close', self._on_close)

    def _on_raw(self, event: RawEvent):
        if event.from_server:
            self.buffer.append(event.line)

    def _on_close(self, payload=None):
        # Deferred one loop turn so a wait on 'close' itself still resolves
        asyncio.get_running_loop().call_soon(self.waits.close, "connection closed")

    async def connect(self, host: str, port: int, nick: str, username: Optional[str] = None,
                      gecos: Optional[str] = None, tls: bool = False, **extra):
        """Connect to an IRC server and wait for registration."""
        options = {
            'host': host,
            'port': port,
            'nick': nick,
            'username': username or nick,
            'gecos': gecos or self.config.get('client', 'gecos', default='Test Client'),
            'tls': bool(tls),
            'tls_verify': self.config.get('server', 'tls_verify', default=False),
            'auto_reconnect': False,
        }
        options.update(extra)
        await self.lifecycle.connect(options)

    async def wait_for_event(self, event: str, timeout: Optional[float] = None):
        """Wait for a specific event to occur."""
        return await self.waits.wait_for_event(event, timeout)

    async def wait_for_raw(self, pattern: Union[str, Pattern], timeout: Optional[float] = None) -> str:
        """Wait until a raw message matching the pattern is received."""
        return await self.waits.wait_for_raw(pattern, timeout)

    def raw(self, command: str):
        """Send a raw IRC command."""
        self.connection.raw(command)

    def join(self, channel: str):
        self.connection.join(channel)

    def say(self, target: str, message: str):
        """Send a message to a channel or user."""
        self.connection.say(target, message)

    def notice(self, target: str, message: str):
        self.connection.notice(target, message)

    def nick(self, new_nick: str):
        """Change nickname."""
        self.connection.change_nick(new_nick)

    def quit(self, message: Optional[str] = None):
        """Quit and disconnect; harmless on a client that is already closed."""
        self.lifecycle.mark_closed()
        self.connection.quit(message)

    async def disconnect(self, message: Optional[str] = None):
        """Quit, wait for the transport to go away and cancel leftover waits."""
        self.quit(message)
        await self.connection.wait_closed()
        self.waits.close("client disconnected")

    @property
    def state(self) -> ConnectionState:
        return self.lifecycle.state

    @property
    def registered(self) -> bool:
        return self.lifecycle.state is ConnectionState.REGISTERED

    @property
    def nickname(self) -> Optional[str]:
        return self.connection.nick

    @property
    def raw_client(self):
        """The underlying connection, for advanced operations."""
        return self.connection

    @property
    def raw_messages(self) -> List[str]:
        """All raw lines received so far (a copy)."""
        return self.buffer.snapshot()

    def clear_raw_buffer(self):
        self.buffer.clear()

    def __repr__(self):
        return f"<TestIRCClient {self.nickname} {self.state.value}>"


async def create_test_client(nick: str, host: Optional[str] = None, port: Optional[int] = None,
                             username: Optional[str] = None, gecos: Optional[str] = None,
                             tls: Optional[bool] = None, config: Optional[HarnessConfig] = None,
                             connection=None) -> TestIRCClient:
    """Create a connected test client."""
    config = config or CONFIG
    client = TestIRCClient(connection=connection, config=config)
    extra = {}
    if config.get('server', 'transport') == 'websocket':
        extra['transport'] = 'websocket'
        extra['ws_url'] = config.get('server', 'ws_url')
    if config.get('server', 'password'):
        extra['password'] = config.get('server', 'password')
    await client.connect(
        host=host or config.get('server', 'host', default='nefarious'),
        port=port or config.get('server', 'port', default=6667),
        nick=nick,
        username=username,
        gecos=gecos,
        tls=config.get('server', 'tls', default=False) if tls is None else tls,
        **extra
    )
    return client

# ==============================================================================
# SCENARIO RUNNER
# ==============================================================================


class TestRunner:
    """Scenario suite runner"""

    __test__ = False  # not a pytest test class

    def __init__(self, title: str, config: Optional[HarnessConfig] = None):
        self.title = title
        self.config = config
        self.passed = 0
        self.failed = 0
        self.tests = []
        self.clients: List[TestIRCClient] = []
        self.failures = []

    def test(self, name: str):
        """Decorator for test functions"""
        def decorator(func):
            self.tests.append((name, func))
            return func
        return decorator

    def track(self, client: TestIRCClient) -> TestIRCClient:
        """Register a client for cleanup after the current test"""
        self.clients.append(client)
        return client

    async def cleanup(self):
        """Quit and disconnect every tracked client"""
        config = self.config or CONFIG
        clients, self.clients = self.clients, []
        for client in clients:
            try:
                await asyncio.wait_for(
                    client.disconnect("Test cleanup"),
                    timeout=config.get('timeouts', 'hook', default=30.0)
                )
            except asyncio.TimeoutError:
                logger.warning(f"Timeout disconnecting {client!r}")

    async def run_all(self, only: Optional[str] = None) -> bool:
        """Run all tests (or those whose name contains only)"""
        config = self.config or CONFIG
        test_timeout = config.get('timeouts', 'test', default=30.0)

        print("\n" + "="*70)
        print(self.title.upper())
        print("="*70 + "\n")

        for name, func in self.tests:
            if only and only.lower() not in name.lower():
                continue
            print(f"\n{'='*70}")
            print(f"TEST: {name}")
            print('='*70)

            started = time.monotonic()
            try:
                await asyncio.wait_for(func(), timeout=test_timeout)
                self.passed += 1
                print(f"✅ PASSED: {name} ({time.monotonic() - started:.2f}s)")
            except (AssertionError, HarnessError) as e:
                self.failed += 1
                self.failures.append((name, e))
                print(f"❌ FAILED: {name}")
                print(f"   Error: {e}")
            except asyncio.TimeoutError as e:
                self.failed += 1
                self.failures.append((name, e))
                print(f"❌ FAILED: {name}")
                print(f"   Error: test exceeded {test_timeout:g}s")
            except Exception as e:
                self.failed += 1
                self.failures.append((name, e))
                print(f"❌ ERROR: {name}")
                print(f"   Exception: {e}")
                traceback.print_exc()
            finally:
                await self.cleanup()

        total = self.passed + self.failed
        print("\n" + "="*70)
        print("TEST SUMMARY")
        print("="*70)
        print(f"Passed: {self.passed}")
        print(f"Failed: {self.failed}")
        print(f"Total:  {total}")
        if total:
            print(f"Success Rate: {(self.passed/total*100):.1f}%")
        print("="*70 + "\n")

        return self.failed == 0
