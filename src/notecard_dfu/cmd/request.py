import json
import logging
import argparse

from notecard_dfu.device.manager import DeviceManager
from notecard_dfu.errors import NotecardError


def handle_initialize(manager: DeviceManager, args: argparse.Namespace) -> int:
    """
    Confirms the Notecard answers by asking for its version.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    log = logging.getLogger("cmd.request")
    try:
        rsp = manager.version()
    except NotecardError as e:
        log.error(f"Failed to initialize notecard: {e}")
        return 1

    log.info(f"Notecard initialized successfully on {manager.port}")
    print(json.dumps(rsp, indent=2))
    return 0


def handle_request(manager: DeviceManager, args: argparse.Namespace) -> int:
    """
    Sends one JSON request and prints the response.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    log = logging.getLogger("cmd.request")
    try:
        rsp = manager.request(args.request)
    except ValueError as e:
        log.error(f"Invalid request parameter: {e}")
        return 1
    except NotecardError as e:
        log.error(f"Failed to send request to notecard: {e}")
        return 1

    print(json.dumps(rsp, indent=2))
    return 0
