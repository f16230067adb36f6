from __future__ import annotations

import os
from typing import Any

import pytest

from lamp_registry import LampRegistry
from xaal_bus import BusMessage, LocalDeviceIdentity

HMI_ADDRESS = "9b2f6a1e-0c44-4d27-9d4b-3f1f0d7b2c11"


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeBus:
    """Records what would have been written to the bus."""

    def __init__(self, identity: LocalDeviceIdentity, ok: bool = True) -> None:
        self.identity = identity
        self.ok = ok
        self.sent: list[dict[str, Any]] = []
        self.inbound: list[BusMessage | None] = []

    def fileno(self) -> int:
        return -1

    def write_bus(self, msg_type, action, body=None, targets=None) -> bool:
        self.sent.append(
            {
                "msgType": msg_type,
                "action": action,
                "body": body,
                "targets": list(targets or []),
            }
        )
        return self.ok

    def read_bus(self) -> BusMessage | None:
        return self.inbound.pop(0)

    def notify_alive(self) -> bool:
        return self.write_bus("notify", "alive", {"timeout": self.identity.alive_max})

    def request_is_alive(self, dev_types) -> bool:
        return self.write_bus("request", "isAlive", {"devTypes": list(dev_types)})

    def reply_get_description(self, target: str) -> bool:
        return self.write_bus("reply", "getDescription", self.identity.description(), [target])


def alive(address: str, timeout: int, dev_type: str = "lamp.basic") -> BusMessage:
    return BusMessage(
        source=address,
        msg_type="notify",
        dev_type=dev_type,
        action="alive",
        body={"timeout": timeout},
    )


def lamp_message(
    address: str,
    msg_type: str = "notify",
    action: str = "attributesChange",
    dev_type: str = "lamp.basic",
) -> BusMessage:
    return BusMessage(source=address, msg_type=msg_type, dev_type=dev_type, action=action)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> LampRegistry:
    return LampRegistry(clock=clock)


@pytest.fixture
def operator_pipe():
    """Return read ends of pipes pre-filled with operator input."""
    fds: list[int] = []

    def make(text: str, close_writer: bool = True) -> int:
        read_fd, write_fd = os.pipe()
        os.write(write_fd, text.encode("utf-8"))
        fds.append(read_fd)
        if close_writer:
            os.close(write_fd)
        else:
            fds.append(write_fd)
        return read_fd

    yield make
    for fd in fds:
        os.close(fd)


@pytest.fixture
def identity() -> LocalDeviceIdentity:
    return LocalDeviceIdentity(address=HMI_ADDRESS)


@pytest.fixture
def bus(identity: LocalDeviceIdentity) -> FakeBus:
    return FakeBus(identity)
