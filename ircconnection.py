"""
ircharness Protocol Client
Line-oriented IRC client connection with an event subscription interface

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
import json
import logging
import ssl
from typing import Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

# 512 bytes including the trailing CRLF
MAX_LINE_BYTES = 510

TAG_UNESCAPES = {':': ';', 's': ' ', '\\': '\\', 'r': '\r', 'n': '\n'}

# Commands that get their own named event, keyed by the event name
COMMAND_EVENTS = {
    'PRIVMSG': 'message',
    'NOTICE': 'notice',
    'JOIN': 'join',
    'PART': 'part',
    'NICK': 'nick',
    'QUIT': 'quit',
    'KICK': 'kick',
    'PING': 'ping',
    'ERROR': 'error',
}


# ==============================================================================
# EVENTS
# ==============================================================================

class Subscription:
    """Handle for one registered listener; cancel() removes exactly that listener."""

    def __init__(self, emitter: 'EventEmitter', event: str, handler: Callable, once: bool = False):
        self.emitter = emitter
        self.event = event
        self.handler = handler
        self.once = once
        self.active = True

    def cancel(self):
        if not self.active:
            return
        self.active = False
        self.emitter._remove(self)

    def __repr__(self):
        state = 'active' if self.active else 'cancelled'
        return f"<Subscription {self.event!r} {state}>"


class EventEmitter:
    """Named-event dispatcher with per-listener subscription handles"""

    def __init__(self):
        self._listeners: Dict[str, List[Subscription]] = {}

    def on(self, event: str, handler: Callable) -> Subscription:
        sub = Subscription(self, event, handler)
        self._listeners.setdefault(event, []).append(sub)
        return sub

    def once(self, event: str, handler: Callable) -> Subscription:
        sub = Subscription(self, event, handler, once=True)
        self._listeners.setdefault(event, []).append(sub)
        return sub

    def emit(self, event: str, payload=None):
        """Deliver payload to every listener of event, in registration order."""
        for sub in list(self._listeners.get(event, ())):
            # May have been cancelled by an earlier handler in this same emit
            if not sub.active:
                continue
            if sub.once:
                sub.cancel()
            try:
                sub.handler(payload)
            except Exception as e:
                logger.error(f"Listener error on '{event}': {e}", exc_info=True)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def _remove(self, sub: Subscription):
        listeners = self._listeners.get(sub.event)
        if not listeners:
            return
        try:
            listeners.remove(sub)
        except ValueError:
            pass
        if not listeners:
            del self._listeners[sub.event]


class RawEvent:
    """One protocol line seen on the connection, in either direction"""

    __slots__ = ('from_server', 'line', 'tags')

    def __init__(self, from_server: bool, line: str, tags: Optional[Dict[str, str]] = None):
        self.from_server = from_server
        self.line = line
        self.tags = tags or {}

    def __repr__(self):
        arrow = '<<<' if self.from_server else '>>>'
        return f"<RawEvent {arrow} {self.line!r}>"


# ==============================================================================
# MESSAGE PARSING
# ==============================================================================

def unescape_tag_value(value: str) -> str:
    out = []
    chars = iter(value)
    for c in chars:
        if c == '\\':
            nxt = next(chars, '')
            out.append(TAG_UNESCAPES.get(nxt, nxt))
        else:
            out.append(c)
    return ''.join(out)


class IRCMessage:
    """Parsed IRC line: tags, prefix, command and params"""

    def __init__(self, command: str, params=None, prefix: Optional[str] = None, tags=None):
        self.command = command
        self.params = params or []
        self.prefix = prefix
        self.tags = tags or {}

    @classmethod
    def parse(cls, line: str) -> 'IRCMessage':
        tags = {}
        prefix = None
        line = line.rstrip('\r\n')

        if line.startswith('@'):
            tag_part, _, line = line[1:].partition(' ')
            for tag in tag_part.split(';'):
                if not tag:
                    continue
                key, _, value = tag.partition('=')
                tags[key] = unescape_tag_value(value)
            line = line.lstrip(' ')

        if line.startswith(':'):
            prefix, _, line = line[1:].partition(' ')
            line = line.lstrip(' ')

        if ' :' in line:
            before_trailing, trailing = line.split(' :', 1)
            parts = before_trailing.split()
            params = parts[1:] + [trailing]
        elif line.startswith(':'):
            parts = []
            params = [line[1:]]
        else:
            parts = line.split()
            params = parts[1:]

        command = parts[0].upper() if parts else ''
        return cls(command, params, prefix, tags)

    @property
    def nick(self) -> Optional[str]:
        if self.prefix and '!' in self.prefix:
            return self.prefix.split('!', 1)[0]
        return self.prefix

    @property
    def ident(self) -> Optional[str]:
        if self.prefix and '!' in self.prefix:
            return self.prefix.split('!', 1)[1].split('@', 1)[0]
        return None

    @property
    def hostname(self) -> Optional[str]:
        if self.prefix and '@' in self.prefix:
            return self.prefix.split('@', 1)[1]
        return None

    @property
    def is_numeric(self) -> bool:
        return len(self.command) == 3 and self.command.isdigit()

    def __repr__(self):
        return f"<IRCMessage {self.command} {self.params!r}>"


def clean_line(line: str) -> str:
    """Strip embedded CR/LF and truncate to the protocol line limit."""
    line = line.replace('\r', '').replace('\n', '')
    encoded = line.encode('utf-8', errors='replace')
    if len(encoded) > MAX_LINE_BYTES:
        line = encoded[:MAX_LINE_BYTES].decode('utf-8', errors='ignore')
    return line


# ==============================================================================
# TRANSPORTS
# ==============================================================================

class TCPTransport:
    """Plain or TLS line transport over asyncio streams"""

    def __init__(self, host: str, port: int, use_ssl: bool = False, verify: bool = False):
        self.host = host
        self.port = port
        self.use_ssl = use_ssl
        self.verify = verify
        self.reader = None
        self.writer = None

    async def open(self):
        ssl_context = None
        if self.use_ssl:
            ssl_context = ssl.create_default_context()
            if not self.verify:
                # Test servers run with self-signed certificates
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
        self.reader, self.writer = await asyncio.open_connection(
            self.host, self.port, ssl=ssl_context
        )

    async def read_line(self) -> Optional[str]:
        """Return the next line, or None at end of stream."""
        while True:
            data = await self.reader.readline()
            if not data:
                return None
            line = data.decode('utf-8', errors='replace').rstrip('\r\n')
            if line:
                return line

    def write_line(self, line: str) -> bool:
        if self.writer is None or self.writer.is_closing():
            return False
        self.writer.write((line + '\r\n').encode('utf-8', errors='replace'))
        return True

    def close(self):
        if self.writer and not self.writer.is_closing():
            self.writer.close()

    async def wait_closed(self):
        if self.writer:
            try:
                await self.writer.wait_closed()
            except (ConnectionError, ssl.SSLError) as e:
                logger.debug(f"Transport close error for {self.host}:{self.port}: {e}")


class WebSocketTransport:
    """Line transport through the JSON WebSocket-to-IRC gateway"""

    def __init__(self, url: str):
        self.url = url
        self.websocket = None
        self._send_task = None
        self._outbox: asyncio.Queue = asyncio.Queue()

    async def open(self):
        self.websocket = await websockets.connect(self.url)
        self._send_task = asyncio.create_task(self._sender())

    async def _sender(self):
        while True:
            line = await self._outbox.get()
            if line is None:
                break
            try:
                await self.websocket.send(json.dumps({'type': 'raw', 'command': line}))
            except ConnectionClosed:
                break
        await self.websocket.close()

    async def read_line(self) -> Optional[str]:
        while True:
            try:
                message = await self.websocket.recv()
            except ConnectionClosed:
                return None
            try:
                data = json.loads(message)
            except json.JSONDecodeError:
                line = message.strip() if isinstance(message, str) else ''
                if line:
                    return line
                continue
            if data.get('type') == 'irc' and data.get('raw'):
                return data['raw']
            if data.get('type') == 'error':
                return f"ERROR :{data.get('message', '')}"

    def write_line(self, line: str) -> bool:
        if self.websocket is None or self._send_task is None or self._send_task.done():
            return False
        self._outbox.put_nowait(line)
        return True

    def close(self):
        if self._send_task and not self._send_task.done():
            self._outbox.put_nowait(None)

    async def wait_closed(self):
        if self._send_task:
            await self._send_task


# ==============================================================================
# CONNECTION
# ==============================================================================

class IRCConnection(EventEmitter):
    """
    IRC client connection.

    connect() returns immediately; the handshake, reading and event dispatch
    run in a background task. Listeners subscribe with on()/once() and get:
    raw, registered, close, message, notice, join, part, nick, quit, kick,
    ping, error, numeric and each numeric code (e.g. '433').
    """

    def __init__(self):
        super().__init__()
        self.options: Dict = {}
        self.nick = None
        self.transport = None
        self.registered = False
        self.closed = False
        self._opened = False
        self._task: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return self.nick or '*'

    def connect(self, options: Dict):
        """Start the transport and registration handshake in the background."""
        if self._task is not None:
            raise RuntimeError("IRCConnection.connect() called twice")
        if options.get('auto_reconnect'):
            logger.warning("auto_reconnect is not supported; connection will not reconnect")
        self.options = dict(options)
        self.nick = options['nick']
        if options.get('transport', 'tcp') == 'websocket':
            self.transport = WebSocketTransport(options['ws_url'])
        else:
            self.transport = TCPTransport(
                options['host'], options['port'],
                use_ssl=options.get('tls', False),
                verify=options.get('tls_verify', False)
            )
        self._task = asyncio.create_task(self._run())
        # Covers a task cancelled before it ever started running
        self._task.add_done_callback(lambda task: self._finish())

    async def _run(self):
        error = None
        try:
            await self.transport.open()
            self._opened = True
            logger.debug(f"[{self.name}] transport open")
            if self.options.get('password'):
                self.raw(f"PASS {self.options['password']}")
            self.raw(f"NICK {self.nick}")
            username = self.options.get('username') or self.nick
            gecos = self.options.get('gecos') or self.nick
            self.raw(f"USER {username} 0 * :{gecos}")

            while True:
                line = await self.transport.read_line()
                if line is None:
                    break
                self._handle_line(line)
        except asyncio.CancelledError:
            raise
        except (OSError, asyncio.IncompleteReadError, WebSocketException) as e:
            error = e
            logger.debug(f"[{self.name}] transport error: {e}")
        except Exception as e:
            error = e
            logger.error(f"[{self.name}] connection error: {e}", exc_info=True)
        finally:
            self.transport.close()
            self._finish(error)

    def _finish(self, error=None):
        if self.closed:
            return
        self.closed = True
        logger.debug(f"[{self.name}] connection closed")
        self.emit('close', {'error': error, 'registered': self.registered})

    def _handle_line(self, line: str):
        msg = IRCMessage.parse(line)
        logger.debug(f"[{self.name}] <<< {line}")
        self.emit('raw', RawEvent(True, line, msg.tags))

        if msg.command == 'PING':
            self.raw(f"PONG :{msg.params[-1]}" if msg.params else "PONG")

        if msg.is_numeric:
            if msg.command == '001' and not self.registered:
                if msg.params:
                    self.nick = msg.params[0]
                self.registered = True
                self.emit('registered', {'nick': self.nick, 'tags': msg.tags})
            payload = {'code': msg.command, 'params': msg.params, 'tags': msg.tags,
                       'prefix': msg.prefix}
            self.emit('numeric', payload)
            self.emit(msg.command, payload)
            return

        event = COMMAND_EVENTS.get(msg.command)
        if event is None:
            return
        if msg.command == 'NICK' and msg.nick == self.nick and msg.params:
            self.nick = msg.params[0]
        self.emit(event, self._build_payload(msg))

    def _build_payload(self, msg: IRCMessage) -> Dict:
        payload = {
            'nick': msg.nick,
            'ident': msg.ident,
            'hostname': msg.hostname,
            'params': msg.params,
            'tags': msg.tags,
        }
        params = msg.params
        if msg.command in ('PRIVMSG', 'NOTICE'):
            payload['target'] = params[0] if params else ''
            payload['message'] = params[-1] if len(params) > 1 else ''
        elif msg.command == 'JOIN':
            payload['channel'] = params[0] if params else ''
            # extended-join: JOIN <channel> <account> :<realname>
            if len(params) > 1:
                payload['account'] = params[1]
        elif msg.command == 'PART':
            payload['channel'] = params[0] if params else ''
            payload['message'] = params[1] if len(params) > 1 else ''
        elif msg.command == 'NICK':
            payload['new_nick'] = params[0] if params else ''
        elif msg.command == 'KICK':
            payload['channel'] = params[0] if params else ''
            payload['kicked'] = params[1] if len(params) > 1 else ''
            payload['message'] = params[2] if len(params) > 2 else ''
        else:
            payload['message'] = params[-1] if params else ''
        return payload

    # --------------------------------------------------------------------------
    # Outbound
    # --------------------------------------------------------------------------

    def raw(self, line: str):
        """Send one raw protocol line; dropped silently once the transport is gone."""
        line = clean_line(line)
        if self.transport is None or self.closed or not self.transport.write_line(line):
            logger.debug(f"[{self.name}] dropped (not connected): {line}")
            return
        logger.debug(f"[{self.name}] >>> {line}")
        self.emit('raw', RawEvent(False, line))

    def join(self, channel: str, key: Optional[str] = None):
        self.raw(f"JOIN {channel} {key}" if key else f"JOIN {channel}")

    def part(self, channel: str, reason: Optional[str] = None):
        self.raw(f"PART {channel} :{reason}" if reason else f"PART {channel}")

    def say(self, target: str, text: str):
        for line in text.splitlines() or ['']:
            self.raw(f"PRIVMSG {target} :{line}")

    def notice(self, target: str, text: str):
        for line in text.splitlines() or ['']:
            self.raw(f"NOTICE {target} :{line}")

    def change_nick(self, new_nick: str):
        self.raw(f"NICK {new_nick}")

    def quit(self, reason: Optional[str] = None):
        """Send QUIT and close the transport once the line is flushed."""
        self.raw(f"QUIT :{reason}" if reason else "QUIT")
        self.close()

    def close(self):
        if self._task is not None and not self._task.done() and not self._opened:
            # Still opening the transport; abandon the attempt
            self._task.cancel()
        elif self.transport is not None:
            self.transport.close()

    async def wait_closed(self):
        """Wait until the background task has finished and 'close' was emitted."""
        if self._task is None:
            return
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
        await self.transport.wait_closed()
