"""Data models for daemontop."""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

import psutil

from daemontop.exceptions import ProtocolError

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# RFC 3339 as emitted by cAdvisor, with up to nanosecond fractions
_TIMESTAMP_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>Z|z|[+-]\d{2}:\d{2})?$"
)

DaemonInfo = Mapping[str, Any]


class ChannelState(Enum):
    """Lifecycle states of the daemon channel."""

    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"


def parse_timestamp(value: Any) -> int:
    """
    Convert a sample timestamp to integer nanoseconds since the epoch.

    Accepts integer nanoseconds or an RFC 3339 string. Fractions longer than
    nine digits are truncated; strings without an offset are read as UTC.

    Raises:
        ValueError: If the value is not a recognised timestamp.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid timestamp: {value!r}")

    match = _TIMESTAMP_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid timestamp: {value!r}")

    offset = match.group("offset") or "+00:00"
    if offset in ("Z", "z"):
        offset = "+00:00"
    base = datetime.fromisoformat(match.group("base").replace(" ", "T") + offset)
    delta = base - _EPOCH
    seconds = delta.days * 86400 + delta.seconds
    fraction = (match.group("fraction") or "")[:9].ljust(9, "0")
    return seconds * 1_000_000_000 + int(fraction)


@dataclass(slots=True, frozen=True)
class Envelope:
    """Tagged message exchanged over the channel."""

    action: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize the envelope as a text frame."""
        return json.dumps({"action": self.action, "data": self.data})

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Envelope":
        """
        Parse a text frame into an envelope.

        Raises:
            ProtocolError: If the frame is not a JSON object with a string action.
        """
        try:
            body = json.loads(raw)
        except (ValueError, TypeError, RecursionError) as e:
            raise ProtocolError(f"Unparseable message: {e}") from e

        if not isinstance(body, dict):
            raise ProtocolError("Message is not an object")

        action = body.get("action")
        if not isinstance(action, str) or not action:
            raise ProtocolError("Message has no action")

        data = body.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ProtocolError(f"Message data for {action} is not an object")
        return cls(action=action, data=data)


@dataclass(slots=True, frozen=True)
class DaemonRef:
    """Minimal daemon identity used to correlate info responses."""

    id: str
    name: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DaemonRef":
        """Build a reference from a daemon mapping; `id` is required."""
        if not isinstance(data, Mapping):
            raise ProtocolError("Daemon reference is not an object")
        daemon_id = data.get("id")
        if daemon_id is None or daemon_id == "":
            raise ProtocolError("Daemon reference has no id")
        name = data.get("name")
        return cls(id=str(daemon_id), name=str(name) if name is not None else None)

    def to_dict(self) -> dict[str, Any]:
        """Wire representation of the reference."""
        if self.name is None:
            return {"id": self.id}
        return {"id": self.id, "name": self.name}


@dataclass(slots=True, frozen=True)
class StatsSample:
    """One raw, point-in-time resource counter reading for a container."""

    timestamp_ns: int
    cpu_total_ns: int  # Cumulative
    memory_usage_bytes: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StatsSample":
        """
        Read a sample in the `{timestamp, cpu: {usage: {total}}, memory: {usage}}` shape.

        Missing cpu or memory sections read as zero.

        Raises:
            ValueError: If the sample or its timestamp is malformed.
        """
        try:
            cpu = data.get("cpu") or {}
            memory = data.get("memory") or {}
            return cls(
                timestamp_ns=parse_timestamp(data["timestamp"]),
                cpu_total_ns=int((cpu.get("usage") or {}).get("total") or 0),
                memory_usage_bytes=int(memory.get("usage") or 0),
            )
        except (KeyError, TypeError, AttributeError, OverflowError) as e:
            raise ValueError(f"Malformed stats sample: {e}") from e


@dataclass(slots=True, frozen=True)
class ContainerSpec:
    """Resource specification of a container."""

    has_cpu: bool
    has_memory: bool
    memory_limit_bytes: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ContainerSpec":
        """Read a spec in the `{has_cpu, has_memory, memory: {limit}}` shape."""
        try:
            memory = data.get("memory") or {}
            return cls(
                has_cpu=bool(data.get("has_cpu", False)),
                has_memory=bool(data.get("has_memory", False)),
                memory_limit_bytes=int(memory.get("limit") or 0),
            )
        except (TypeError, AttributeError, OverflowError) as e:
            raise ValueError(f"Malformed container spec: {e}") from e


@dataclass(slots=True, frozen=True)
class HostCapacity:
    """CPU and memory capacity of the machine running a daemon."""

    num_cores: int
    memory_capacity_bytes: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HostCapacity":
        """Read machine info in the `{num_cores, memory_capacity}` shape."""
        try:
            return cls(
                num_cores=int(data["num_cores"]),
                memory_capacity_bytes=int(data["memory_capacity"]),
            )
        except (KeyError, TypeError, OverflowError) as e:
            raise ValueError(f"Malformed machine info: {e}") from e

    @classmethod
    def local(cls) -> "HostCapacity":
        """Capacity of the machine daemontop itself runs on."""
        return cls(
            num_cores=psutil.cpu_count(logical=True) or 1,
            memory_capacity_bytes=psutil.virtual_memory().total,
        )


@dataclass(slots=True, frozen=True)
class DerivedMetrics:
    """Bounded utilization figures computed from two consecutive samples."""

    cpu_usage_percent: int  # 0 - 100
    memory_usage: int | None = None  # Decimal megabytes
    memory_limit: int | None = None  # Bytes
    memory_usage_percent: int | None = None  # 0 - 100


@dataclass(slots=True)
class DaemonState:
    """State the dashboard holds for one daemon."""

    ref: DaemonRef
    info: DaemonInfo | None = None
    fetching: bool = False
    fetching_since: float | None = None  # time.monotonic() when flagged
