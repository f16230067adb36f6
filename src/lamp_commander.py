#!/usr/bin/env python3
"""
Lamp Commander

Command-line xAAL HMI for lamps. It discovers the lamps on the bus, keeps
track of which ones are still alive, lets the operator pick some of them
and sends them ``on``/``off`` requests.

Everything runs in one thread: a single ``select`` waits on the operator's
terminal and the bus socket, and its timeout drives the periodic alive
notifications of the HMI itself.
"""

from __future__ import annotations

import logging
import os
import select
import sys
import time
import uuid
from typing import Any, Callable, TextIO

from dotenv import load_dotenv

from lamp_registry import LampNotFound, LampRegistry
from lamp_tracker import bulk_request, reconcile_message
from logging_utils import configure_root_logger
from xaal_bus import BusError, BusMessage, LocalDeviceIdentity, XaalBus, handle_request

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# Bus coordinates (multicast group and port)
XAAL_BUS_ADDRESS = os.getenv("XAAL_BUS_ADDRESS")
XAAL_BUS_PORT = os.getenv("XAAL_BUS_PORT")
XAAL_BUS_HOPS = int(os.getenv("XAAL_BUS_HOPS", "-1"))

# Address of this HMI on the bus; a fresh one is generated when unset
LAMP_COMMANDER_UUID = os.getenv("LAMP_COMMANDER_UUID")

# Period of our own alive notifications in seconds
ALIVE_PERIOD = int(os.getenv("ALIVE_PERIOD_SECONDS", "60"))

LAMP_DEV_TYPES = ("lamp.any",)

# The loop gives up after this many select() failures in a row
MAX_CONSECUTIVE_SELECT_ERRORS = 3

CLI_MENU = "\nMenu: (1) Select lamps  (2) Send on  (3) Send off  (4) Quit\nYour choice?  "


class OperatorInput:
    """Line reader on the operator's file descriptor.

    Lines are read straight from the descriptor and kept here, so lines
    that arrived together (pasted or piped) stay visible to the loop even
    though ``select`` no longer reports the descriptor as readable.
    """

    CHUNK_SIZE = 4096

    def __init__(self, stream: Any) -> None:
        self._fd = stream if isinstance(stream, int) else stream.fileno()
        self._buffer = b""
        self._eof = False

    def fileno(self) -> int:
        return self._fd

    def has_pending_line(self) -> bool:
        """True when ``readline`` can return without touching the descriptor."""
        return b"\n" in self._buffer or self._eof

    def readline(self) -> str:
        """Return the next line, or an empty string once input is closed."""
        while b"\n" not in self._buffer and not self._eof:
            chunk = os.read(self._fd, self.CHUNK_SIZE)
            if chunk:
                self._buffer += chunk
            else:
                self._eof = True

        line, sep, rest = self._buffer.partition(b"\n")
        self._buffer = rest
        return (line + sep).decode("utf-8", errors="replace")


class CommanderMenu:
    """Operator side of the loop: reads one command and acts on it."""

    def __init__(
        self,
        registry: LampRegistry,
        bus: XaalBus,
        stdin: Any = None,
        stdout: TextIO | None = None,
    ) -> None:
        self.registry = registry
        self.bus = bus
        self.stdin = OperatorInput(stdin if stdin is not None else sys.stdin)
        self.stdout = stdout if stdout is not None else sys.stdout

    def _print(self, text: str, end: str = "\n") -> None:
        print(text, end=end, file=self.stdout)
        self.stdout.flush()

    def show_menu(self) -> None:
        self._print(CLI_MENU, end="")

    def handle_input(self) -> bool:
        """Read and run one menu command.

        Returns:
            False when the operator asked to quit (or closed the input)
        """
        line = self.stdin.readline()
        if not line:
            logger.info("Operator input closed")
            return False

        try:
            choice = int(line.strip())
        except ValueError:
            self._print("Sorry.")
        else:
            if choice == 1:
                self.select_lamps()
            elif choice == 2:
                self.send("on")
            elif choice == 3:
                self.send("off")
            elif choice == 4:
                return False
            else:
                self._print(f"Sorry, {choice} is not on the menu.")

        self.show_menu()
        return True

    def select_lamps(self) -> None:
        """List the live lamps and toggle the one the operator picks."""
        self._print("Detected lamps:")
        count = 0
        for count, lamp in enumerate(self.registry.iter_lamps(), start=1):
            marker = "*" if lamp.selected else " "
            expiry = "never" if lamp.is_immortal else time.ctime(lamp.expires_at)
            self._print(f"{count:2d}: {marker} {lamp.address} {lamp.dev_type} {expiry}")

        if not count:
            return

        self._print("Toggle which one? ", end="")
        answer = self.stdin.readline()
        try:
            index = int(answer.strip())
        except ValueError:
            self._print("Sorry.")
            return

        try:
            self.registry.toggle_selected_by_index(index - 1)
        except LampNotFound:
            self._print("Sorry, can't find it.")

    def send(self, action: str) -> bool:
        ok = bulk_request(self.bus, self.registry, action)
        if not ok:
            logger.error("Could not send '%s' request", action)
        return ok


def route_bus_message(
    bus: XaalBus,
    registry: LampRegistry,
    message: BusMessage | None,
    clock: Callable[[], float] = time.time,
) -> None:
    """Hand an inbound message to the responder or to the lamp registry."""
    if message is None:
        return
    if handle_request(bus, message):
        return
    reconcile_message(registry, message, clock)


def run_event_loop(
    menu: CommanderMenu,
    bus: XaalBus,
    registry: LampRegistry,
    *,
    alive_period: float = ALIVE_PERIOD,
    monotonic: Callable[[], float] = time.monotonic,
    select_fn: Callable[..., Any] = select.select,
) -> None:
    """
    Serve the operator and the bus until the operator quits.

    At most one input is handled per wake-up, the operator first. The
    alive notification is sent once its deadline has passed, whatever woke
    the loop up. Lines already read from the operator are served before
    waiting again.

    Args:
        menu: Operator menu reading from ``menu.stdin``
        bus: Joined bus endpoint
        registry: The lamp registry
        alive_period: Seconds between two alive notifications
        monotonic: Clock used to schedule the alive notifications
        select_fn: ``select.select`` compatible wait function

    Raises:
        OSError: ``select`` kept failing (MAX_CONSECUTIVE_SELECT_ERRORS times)
    """
    next_alive = monotonic() + alive_period
    select_errors = 0

    while True:
        if menu.stdin.has_pending_line():
            readable = [menu.stdin]
        else:
            timeout = max(0.0, next_alive - monotonic())
            try:
                readable, _, _ = select_fn([menu.stdin, bus], [], [], timeout)
            except OSError as exc:
                select_errors += 1
                if select_errors >= MAX_CONSECUTIVE_SELECT_ERRORS:
                    logger.critical("select() failed %d times in a row: %s", select_errors, exc)
                    raise
                logger.error(
                    "select() failed (%d/%d): %s",
                    select_errors,
                    MAX_CONSECUTIVE_SELECT_ERRORS,
                    exc,
                )
                readable = []
            else:
                select_errors = 0

        if menu.stdin in readable:
            if not menu.handle_input():
                return
        elif bus in readable:
            try:
                message = bus.read_bus()
            except OSError as exc:
                logger.error("Could not read from the bus: %s", exc)
            else:
                route_bus_message(bus, registry, message)

        if monotonic() >= next_alive:
            if not bus.notify_alive():
                logger.error("Could not send spontaneous alive notification.")
            next_alive = monotonic() + alive_period


def resolve_device_address(configured: str | None) -> str:
    """Return the configured device UUID, or a freshly generated one."""
    if configured:
        try:
            return str(uuid.UUID(configured))
        except ValueError:
            logger.warning("Invalid uuid '%s', generating a new one", configured)

    address = str(uuid.uuid4())
    print(f"Device: {address}")
    return address


def main() -> None:
    """Entry point for Lamp Commander."""
    configure_root_logger("lamp_commander.log")

    if not XAAL_BUS_ADDRESS or not XAAL_BUS_PORT:
        print(
            "XAAL_BUS_ADDRESS and XAAL_BUS_PORT must be set "
            "(environment or .env file).",
            file=sys.stderr,
        )
        sys.exit(1)

    try:
        port = int(XAAL_BUS_PORT)
    except ValueError:
        print(f"Invalid XAAL_BUS_PORT '{XAAL_BUS_PORT}'", file=sys.stderr)
        sys.exit(1)

    identity = LocalDeviceIdentity(
        address=resolve_device_address(LAMP_COMMANDER_UUID),
        alive_max=2 * ALIVE_PERIOD,
    )

    try:
        bus = XaalBus.join(XAAL_BUS_ADDRESS, port, XAAL_BUS_HOPS, identity)
    except BusError as e:
        logger.critical(f"{e}")
        sys.exit(1)

    logger.info("Starting Lamp Commander as %s", identity.address)
    logger.info("Alive period: %ds", ALIVE_PERIOD)

    with bus:
        registry = LampRegistry()
        menu = CommanderMenu(registry, bus)

        if not bus.notify_alive():
            logger.error("Could not send initial alive notification.")
        if not bus.request_is_alive(LAMP_DEV_TYPES):
            logger.error("Could not send isAlive request.")

        menu.show_menu()
        try:
            run_event_loop(menu, bus, registry, alive_period=ALIVE_PERIOD)
        except KeyboardInterrupt:
            logger.info("Lamp Commander stopped by user")
        except OSError as e:
            logger.critical(f"Lamp Commander crashed: {e}")
            sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()
