"""Minimal xAAL bus endpoint: JSON codec, UDP multicast transport and the
responders every xAAL device has to provide.

Messages are sent unciphered (``cipher: "none"``) and unsigned.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import math
import socket
import struct
from typing import Any, Iterable

logger = logging.getLogger(__name__)

XAAL_VERSION = "0.4"
RECV_BUFFER_SIZE = 65535

# Header fields that must be present (as strings) in every inbound message.
_REQUIRED_HEADER_FIELDS = ("source", "msgType", "devType", "action")


class BusError(Exception):
    """Raised when the bus cannot be joined."""


@dataclasses.dataclass(frozen=True)
class LocalDeviceIdentity:
    """Description of this process as an xAAL device."""

    address: str
    dev_type: str = "hmi.basic"
    alive_max: int = 120
    vendor_id: str = "Team IHSEV"
    product_id: str = "Lamp Commander"
    version: str = "0.3"
    url: str = "http://recherche.telecom-bretagne.eu/xaal/documentation/"
    hw_id: str | None = None
    info: str | None = None
    unsupported_methods: tuple[str, ...] = ("getAttributes",)
    unsupported_notifications: tuple[str, ...] = ("attributesChange",)

    def description(self) -> dict[str, Any]:
        """Body of the ``getDescription`` reply."""
        body: dict[str, Any] = {
            "vendorId": self.vendor_id,
            "productId": self.product_id,
            "version": self.version,
            "url": self.url,
            "parent": "",
            "childrens": [],
            "unsupportedMethods": list(self.unsupported_methods),
            "unsupportedNotifications": list(self.unsupported_notifications),
            "unsupportedAttributes": [],
        }
        if self.hw_id:
            body["hwId"] = self.hw_id
        if self.info:
            body["info"] = self.info
        return body


@dataclasses.dataclass(frozen=True)
class BusMessage:
    """A decoded xAAL message."""

    source: str
    msg_type: str
    dev_type: str
    action: str
    targets: tuple[str, ...] = ()
    body: dict[str, Any] = dataclasses.field(default_factory=dict)
    version: str = XAAL_VERSION

    @property
    def alive_timeout(self) -> float | None:
        """Liveness window in seconds carried by an ``alive`` notification.

        Integers and finite floats are accepted; anything else (missing,
        negative, boolean, string) gives None.
        """
        timeout = self.body.get("timeout")
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
            return None
        if not math.isfinite(timeout) or timeout < 0:
            return None
        return timeout

    def is_addressed_to(self, address: str) -> bool:
        """True for broadcasts and for messages listing *address* as a target."""
        return not self.targets or address in self.targets


def encode_message(
    identity: LocalDeviceIdentity,
    msg_type: str,
    action: str,
    body: dict[str, Any] | None = None,
    targets: Iterable[str] | None = None,
) -> bytes:
    header = {
        "version": XAAL_VERSION,
        "source": identity.address,
        "targets": list(targets or []),
        "msgType": msg_type,
        "devType": identity.dev_type,
        "action": action,
        "cipher": "none",
        "signature": "",
    }
    payload: dict[str, Any] = {"header": header}
    if body:
        payload["body"] = body
    return json.dumps(payload).encode("utf-8")


def decode_message(data: bytes) -> BusMessage | None:
    """Decode a datagram, returning None for anything malformed."""
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        logger.debug("Dropping undecodable datagram: %s", exc)
        return None

    if not isinstance(payload, dict) or not isinstance(payload.get("header"), dict):
        logger.debug("Dropping message without header: %s", payload)
        return None
    header = payload["header"]

    for field in _REQUIRED_HEADER_FIELDS:
        if not isinstance(header.get(field), str):
            logger.debug("Dropping message missing %s: %s", field, header)
            return None

    targets = header.get("targets", [])
    if not isinstance(targets, list) or not all(isinstance(t, str) for t in targets):
        logger.debug("Dropping message with bad targets: %s", header)
        return None

    body = payload.get("body") or {}
    if not isinstance(body, dict):
        logger.debug("Dropping message with bad body: %s", payload)
        return None

    return BusMessage(
        source=header["source"],
        msg_type=header["msgType"],
        dev_type=header["devType"],
        action=header["action"],
        targets=tuple(targets),
        body=body,
        version=str(header.get("version", XAAL_VERSION)),
    )


def dev_type_matches(requested: Iterable[Any], dev_type: str) -> bool:
    """Check an ``isAlive`` devTypes filter against *dev_type*.

    ``any.any`` matches everything, ``<class>.any`` matches every subtype
    of the class, anything else has to be an exact match.
    """
    dev_class = dev_type.split(".", 1)[0]
    for candidate in requested:
        if not isinstance(candidate, str):
            continue
        if candidate in ("any.any", dev_type, f"{dev_class}.any"):
            return True
    return False


class XaalBus:
    """UDP multicast endpoint on the xAAL bus."""

    def __init__(
        self,
        sock: socket.socket,
        group: tuple[str, int],
        identity: LocalDeviceIdentity,
    ) -> None:
        self._sock = sock
        self.group = group
        self.identity = identity

    @classmethod
    def join(
        cls,
        address: str,
        port: int,
        hops: int,
        identity: LocalDeviceIdentity,
    ) -> "XaalBus":
        """Join the multicast group *address*:*port*.

        Args:
            address: Multicast group address
            port: UDP port of the bus
            hops: Multicast TTL, negative to keep the system default
            identity: The local device

        Raises:
            BusError: The socket could not be set up
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("", port))
            mreq = struct.pack("=4sl", socket.inet_aton(address), socket.INADDR_ANY)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            if hops >= 0:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, hops)
        except OSError as exc:
            sock.close()
            raise BusError(f"Could not join xAAL bus {address}:{port}: {exc}") from exc

        logger.info("Joined xAAL bus %s:%d (hops=%d)", address, port, hops)
        return cls(sock, (address, port), identity)

    def fileno(self) -> int:
        return self._sock.fileno()

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> "XaalBus":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def write_bus(
        self,
        msg_type: str,
        action: str,
        body: dict[str, Any] | None = None,
        targets: Iterable[str] | None = None,
    ) -> bool:
        """Send one message to the group. Returns False if it could not be sent."""
        data = encode_message(self.identity, msg_type, action, body, targets)
        try:
            self._sock.sendto(data, self.group)
        except OSError as exc:
            logger.error("Failed to send %s %s: %s", msg_type, action, exc)
            return False
        logger.debug("Sent %s %s (%d bytes)", msg_type, action, len(data))
        return True

    def read_bus(self) -> BusMessage | None:
        data, _ = self._sock.recvfrom(RECV_BUFFER_SIZE)
        return decode_message(data)

    def notify_alive(self) -> bool:
        return self.write_bus("notify", "alive", {"timeout": self.identity.alive_max})

    def request_is_alive(self, dev_types: Iterable[str]) -> bool:
        return self.write_bus("request", "isAlive", {"devTypes": list(dev_types)})

    def reply_get_description(self, target: str) -> bool:
        return self.write_bus(
            "reply", "getDescription", self.identity.description(), [target]
        )


def handle_request(bus: XaalBus, message: BusMessage) -> bool:
    """Answer a request sent to the local device.

    Returns:
        True if the message was a request for us (answered or not), False if
        it should be looked at by someone else
    """
    identity = bus.identity
    if message.msg_type != "request" or not message.is_addressed_to(identity.address):
        return False

    if message.action == "isAlive":
        if dev_type_matches(message.body.get("devTypes", []), identity.dev_type):
            if not bus.notify_alive():
                logger.error("Could not reply to isAlive")
    elif message.action == "getDescription":
        if not bus.reply_get_description(message.source):
            logger.error("Could not reply to getDescription")
    elif message.action == "getAttributes":
        pass  # no attributes
    else:
        logger.debug("Ignoring %s request from %s", message.action, message.source)
    return True
