"""Test doubles: an in-memory connection and a loopback IRC server."""

import asyncio
import json
from collections import defaultdict

from ircconnection import EventEmitter, RawEvent


class FakeConnection(EventEmitter):
    """Stands in for IRCConnection; records outbound lines, events are fed by hand."""

    def __init__(self):
        super().__init__()
        self.options = None
        self.nick = None
        self.sent = []
        self.connect_calls = 0
        self.close_calls = 0
        self.closed = False

    def connect(self, options):
        self.connect_calls += 1
        self.options = options
        self.nick = options['nick']

    # inbound simulation

    def feed(self, line, tags=None):
        self.emit('raw', RawEvent(True, line, tags))

    def register(self):
        self.feed(f":irc.test 001 {self.nick} :Welcome to the Test Network {self.nick}")
        self.emit('registered', {'nick': self.nick})

    def drop(self, error=None):
        if self.closed:
            return
        self.closed = True
        self.emit('close', {'error': error})

    # outbound primitives

    def raw(self, line):
        if self.closed:
            return
        self.sent.append(line)
        self.emit('raw', RawEvent(False, line))

    def join(self, channel, key=None):
        self.raw(f"JOIN {channel}")

    def say(self, target, text):
        self.raw(f"PRIVMSG {target} :{text}")

    def notice(self, target, text):
        self.raw(f"NOTICE {target} :{text}")

    def change_nick(self, new_nick):
        self.raw(f"NICK {new_nick}")

    def quit(self, reason=None):
        self.raw(f"QUIT :{reason}" if reason else "QUIT")
        self.close()

    def close(self):
        self.close_calls += 1
        if not self.closed:
            asyncio.get_running_loop().call_soon(self.drop)

    async def wait_closed(self):
        await asyncio.sleep(0)
        await asyncio.sleep(0)


class FakeIRCServer:
    """
    Minimal IRC server on an ephemeral loopback port.

    Handles NICK, USER, JOIN, PART, PRIVMSG, NOTICE, PING and QUIT. With
    register=False it never sends 001; with reject=True it closes the
    connection as soon as USER arrives.
    """

    def __init__(self, servername="irc.test", register=True, reject=False, ping_token=None):
        self.servername = servername
        self.register = register
        self.reject = reject
        self.ping_token = ping_token
        self.clients = {}
        self.channels = defaultdict(set)
        self.received = []
        self.writers = set()
        self.server = None
        self.port = None

    async def start(self):
        self.server = await asyncio.start_server(self.handle_client, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def stop(self):
        for writer in list(self.writers):
            writer.close()
        self.server.close()
        await self.server.wait_closed()

    async def handle_client(self, reader, writer):
        state = {'nick': None, 'user': None, 'registered': False}
        self.writers.add(writer)
        try:
            while not writer.is_closing():
                line = await reader.readline()
                if not line:
                    break
                raw = line.decode('utf-8', errors='replace').strip()
                if raw:
                    self.received.append(raw)
                    self.dispatch(state, writer, raw)
                await writer.drain()
        except OSError:
            pass
        finally:
            self.part_all(state)
            self.writers.discard(writer)
            writer.close()

    def send(self, writer, line):
        if not writer.is_closing():
            writer.write((line + "\r\n").encode('utf-8'))

    def prefix(self, state):
        return f"{state['nick']}!{state['user']}@127.0.0.1"

    def members(self, channel):
        return [self.clients[n] for n in self.channels.get(channel, ()) if n in self.clients]

    def part_all(self, state):
        nick = state['nick']
        if self.clients.get(nick) is not None:
            del self.clients[nick]
        for members in self.channels.values():
            members.discard(nick)

    def dispatch(self, state, writer, raw):
        parts = raw.split(' :', 1)
        args = parts[0].split()
        cmd = args[0].upper()
        params = args[1:]
        if len(parts) > 1:
            params.append(parts[1])

        if cmd == "PING":
            self.send(writer, f":{self.servername} PONG {self.servername} :{params[-1] if params else ''}")
        elif cmd == "NICK":
            new_nick = params[0]
            if state['registered']:
                old_prefix = self.prefix(state)
                del self.clients[state['nick']]
                for members in self.channels.values():
                    if state['nick'] in members:
                        members.discard(state['nick'])
                        members.add(new_nick)
                self.clients[new_nick] = writer
                self.send(writer, f":{old_prefix} NICK :{new_nick}")
            state['nick'] = new_nick
            self.maybe_register(state, writer)
        elif cmd == "USER":
            state['user'] = params[0]
            self.maybe_register(state, writer)
        elif cmd == "JOIN":
            channel = params[0]
            self.channels[channel].add(state['nick'])
            for member in self.members(channel):
                self.send(member, f":{self.prefix(state)} JOIN {channel}")
        elif cmd == "PART":
            channel = params[0]
            for member in self.members(channel):
                self.send(member, f":{self.prefix(state)} PART {channel}")
            self.channels[channel].discard(state['nick'])
        elif cmd in ("PRIVMSG", "NOTICE"):
            target, text = params[0], params[-1]
            if target.startswith('#'):
                recipients = [self.clients[n] for n in self.channels.get(target, ())
                              if n != state['nick'] and n in self.clients]
            else:
                recipients = [self.clients[target]] if target in self.clients else []
            for member in recipients:
                self.send(member, f":{self.prefix(state)} {cmd} {target} :{text}")
        elif cmd == "QUIT":
            self.send(writer, f"ERROR :Closing Link: {state['nick']} (Quit: {params[-1] if params else ''})")
            writer.close()

    def maybe_register(self, state, writer):
        if state['registered'] or not (state['nick'] and state['user']):
            return
        if self.reject:
            self.send(writer, "ERROR :Closing Link: (Banned)")
            writer.close()
            return
        self.send(writer, f":{self.servername} NOTICE * :*** Looking up your hostname")
        if self.ping_token:
            self.send(writer, f"PING :{self.ping_token}")
        if not self.register:
            return
        nick = state['nick']
        state['registered'] = True
        self.clients[nick] = writer
        self.send(writer, f":{self.servername} 001 {nick} :Welcome to the Test Network {nick}")
        self.send(writer, f":{self.servername} 002 {nick} :Your host is {self.servername}")
        self.send(writer, f":{self.servername} 376 {nick} :End of /MOTD command.")


class FakeGateway:
    """WebSocket endpoint speaking the webchat gateway's JSON framing."""

    def __init__(self):
        self.received = []
        self.nick = None

    async def handle_websocket(self, websocket, path=None):
        async for message in websocket:
            data = json.loads(message)
            line = data.get('command', '')
            self.received.append(line)
            if line.startswith("NICK "):
                self.nick = line.split()[1]
            elif line.startswith("USER "):
                await websocket.send(json.dumps({
                    'type': 'irc', 'raw': f":gw.test 001 {self.nick} :Welcome {self.nick}"
                }))
            elif line.startswith("JOIN "):
                channel = line.split()[1]
                await websocket.send(json.dumps({
                    'type': 'irc', 'raw': f":{self.nick}!web@gateway JOIN {channel}"
                }))
            elif line.startswith("QUIT"):
                await websocket.send(json.dumps({'type': 'irc', 'raw': "ERROR :Closing Link"}))
                break


async def eventually(condition, timeout=2.0):
    """Poll condition until it holds or timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


async def connect_registered(client, connection, nick='u1', host='irc.test', port=6667):
    """Run client.connect() against a FakeConnection and complete registration."""
    task = asyncio.create_task(client.connect(host=host, port=port, nick=nick))
    await asyncio.sleep(0)  # connect() subscribes to 'registered' on its first step
    connection.register()
    await task
    return client
