#!/usr/bin/env python3
"""
ircharness Scenario Runner
Runs the scenario suites against a live IRC server

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

import argparse
import asyncio
import importlib
import sys

import ircharness
from ircharness import CONFIG, setup_logging

SUITES = {
    'connection': 'ircharness_test_connection',
    'services': 'ircharness_test_services',
}


def apply_args(config, args):
    """Fold command-line overrides into the configuration."""
    if args.config_file:
        config.config_file = args.config_file
        config.load()
    if args.host:
        config.set('server', 'host', value=args.host)
    if args.port:
        config.set('server', 'port', value=args.port)
    if args.tls:
        config.set('server', 'tls', value=True)
    if args.ws_url:
        config.set('server', 'transport', value='websocket')
        config.set('server', 'ws_url', value=args.ws_url)
    if args.timeout:
        config.set('timeouts', 'test', value=args.timeout)


async def main(args):
    """Main entry point."""
    apply_args(CONFIG, args)
    log_config = CONFIG.get_section('logging')
    logger = setup_logging(
        log_file=args.log_file or log_config.get('file'),
        log_level=args.log_level or log_config.get('level', 'INFO')
    )

    if CONFIG.get('server', 'transport') == 'websocket':
        target = CONFIG.get('server', 'ws_url')
    else:
        target = f"{CONFIG.get('server', 'host')}:{CONFIG.get('server', 'port')}"
    logger.info(f"ircharness {ircharness.__version__} against {target}")

    ok = True
    for suite in args.suites or list(SUITES):
        module = importlib.import_module(SUITES[suite])
        if not await module.runner.run_all(only=args.only):
            ok = False
    return 0 if ok else 1


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='ircharness - run IRC scenario suites against a live server',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  Run every suite against the configured server
  %(prog)s --host 127.0.0.1 --port 6667     Point at a local server
  %(prog)s --suite services --only ChanServ  Run matching services scenarios only
  %(prog)s --ws-url ws://127.0.0.1:8765     Connect through the webchat gateway
        """
    )
    parser.add_argument(
        '--config', '-c',
        dest='config_file',
        help='Path to configuration file (default: ircharness_config.json if present)'
    )
    parser.add_argument('--host', help='IRC server host')
    parser.add_argument('--port', type=int, help='IRC server port')
    parser.add_argument('--tls', action='store_true', help='Connect with TLS')
    parser.add_argument('--ws-url', help='Connect through a WebSocket-to-IRC gateway')
    parser.add_argument(
        '--suite',
        action='append',
        dest='suites',
        choices=sorted(SUITES),
        help='Suite to run (repeatable, default: all)'
    )
    parser.add_argument('--only', help='Run only scenarios whose name contains this text')
    parser.add_argument('--timeout', type=float, help='Per-scenario timeout in seconds')
    parser.add_argument(
        '--log-file',
        help='Path to log file (default: none)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: INFO)'
    )
    parser.add_argument(
        '--version', '-v',
        action='version',
        version=f'ircharness {ircharness.__version__}'
    )
    return parser.parse_args(argv)


def cli(argv=None):
    args = parse_args(argv)
    try:
        return asyncio.run(main(args))
    except KeyboardInterrupt:
        print("\n\nStopped by user")
        return 130


if __name__ == "__main__":
    sys.exit(cli())
