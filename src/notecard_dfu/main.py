"""
Notecard DFU Tool

A command-line tool for sending requests to Blues Notecards and updating
their firmware over USB or UART.
"""

import os
import sys
import argparse
import logging
from typing import List, Optional

from notecard_dfu.cmd.firmware import handle_sideload, handle_update, handle_versions
from notecard_dfu.cmd.request import handle_initialize, handle_request
from notecard_dfu.device.manager import DeviceManager
from notecard_dfu.device.notecard import DEFAULT_TRANSACTION_TIMEOUT
from notecard_dfu.firmware_index import DEFAULT_CHANNEL
from notecard_dfu.streams.usb import DEFAULT_BAUD

PORT_ENV_VAR = "NOTECARD_PORT"

HANDLERS = {
    'initialize': handle_initialize,
    'request': handle_request,
    'sideload': handle_sideload,
    'update': handle_update,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Notecard DFU Tool',
        epilog="""A tool for sending requests to Blues Notecards and updating their firmware."""
    )

    # Global options (apply to all subcommands)
    parser.add_argument('--port', '-p', default=os.environ.get(PORT_ENV_VAR),
                        help=f'Serial port of the Notecard (default: ${PORT_ENV_VAR}, else auto-detect)')
    parser.add_argument('--baud', '-b', type=int, default=DEFAULT_BAUD,
                        help=f'Baud rate for UART connections (default: {DEFAULT_BAUD})')
    parser.add_argument('--timeout', type=float, default=DEFAULT_TRANSACTION_TIMEOUT,
                        help=f'Seconds to wait for each Notecard response (default: {DEFAULT_TRANSACTION_TIMEOUT:g})')
    # Logging / Output options (Mutually Exclusive)
    log_level_group = parser.add_mutually_exclusive_group()
    log_level_group.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose DEBUG level logging')
    log_level_group.add_argument('--quiet', '-q', action='store_true',
                        help='Suppress INFO level logging, show only WARNINGs and ERRORs')

    subparsers = parser.add_subparsers(dest='action', title='Actions',
                                     description='Choose an action to perform', required=True)

    subparsers.add_parser('initialize', help='Connect to the Notecard and show its version')

    parser_request = subparsers.add_parser('request', help='Send one JSON request to the Notecard')
    parser_request.add_argument('request', help='Request JSON, e.g. \'{"req":"card.status"}\'')

    parser_sideload = subparsers.add_parser('sideload', help='Sideload a local firmware image')
    parser_sideload.add_argument('firmware_file', help='Path to the firmware file (.bin)')
    parser_sideload.add_argument('--type', choices=['notecard', 'host'],
                                 help='Image type (default: detected from the image)')

    for name, help_text in (('versions', 'List published Notecard firmware versions'),
                            ('update', 'Download and install published Notecard firmware')):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('--model', '-m', required=True,
                         help='Notecard model, e.g. NOTE-WBNA or NOTE-NBGL-500')
        sub.add_argument('--channel', default=DEFAULT_CHANNEL,
                         help=f'Update channel (default: {DEFAULT_CHANNEL})')
        if name == 'update':
            sub.add_argument('--version', help='Firmware version (default: latest on the channel)')
            sub.add_argument('--force', action='store_true',
                             help='Update even if the Notecard already runs this version')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # Set up logging level based on flags
    log_level = logging.INFO # Default
    if args.verbose:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.WARNING

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    log = logging.getLogger("main")

    # Version listing only talks to the firmware index
    if args.action == 'versions':
        return handle_versions(None, args)

    manager = DeviceManager(port=args.port, baud=args.baud, timeout=args.timeout, verbose=args.verbose)

    exit_code = 1 # Default to error
    try:
        if not manager.open():
            log.error("Failed to connect to Notecard")
            return 1
        exit_code = HANDLERS[args.action](manager, args)

    except KeyboardInterrupt:
        log.warning("Operation cancelled by user")
        exit_code = 1
    except Exception as e:
        log.error(f"An unexpected error occurred: {str(e)}")
        log.exception("Exception details:")
        exit_code = 1
    finally:
        manager.close()

    return exit_code

if __name__ == "__main__":
    sys.exit(main())
