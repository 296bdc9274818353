"""Line scanner for the free-form text the gateway shell prints.

Two shapes are recognised per line, beacon first:
  - beacon report:  "PB-ADV UUID <32 hex>" (also PB-GATT / "UUID:")
  - address report: any "0x" token of 1-4 hex digits

Everything else is opaque traffic. Scanning is stateless: whatever text
accumulated during one read cycle is scanned once, and an identifier split
across two cycles is missed unless a LineReassembler is put in front.
"""

from dataclasses import dataclass
from typing import Iterator, Optional, Union

from mesh_provisioner.constants import ADDRESS_RE, ANSI_RE, BEACON_RE, PROMPT


@dataclass(frozen=True)
class AddressReport:
    token: str   # e.g. "0x0A1B"
    line: str

    @property
    def address(self) -> int:
        return int(self.token, 16)


@dataclass(frozen=True)
class BeaconReport:
    identifier: str   # raw 32 hex characters, not normalized
    line: str


Event = Union[AddressReport, BeaconReport]


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def split_lines(text: str) -> list[str]:
    """Non-empty lines of ``text`` with colour codes and CR removed."""
    lines = []
    for raw in strip_ansi(text).split("\n"):
        line = raw.strip("\r")
        if line.strip():
            lines.append(line)
    return lines


def extract_events(text: str) -> Iterator[Event]:
    """Lazily yield the events found in one read cycle.

    Only the first beacon report of the cycle is yielded: a cycle
    discovers at most one device.
    """
    beacon_seen = False
    for line in split_lines(text):
        m = BEACON_RE.search(line)
        if m:
            if not beacon_seen:
                beacon_seen = True
                yield BeaconReport(identifier=m.group(1), line=line)
            continue
        m = ADDRESS_RE.search(line)
        if m:
            yield AddressReport(token=m.group(0), line=line)


def first_beacon(text: str) -> Optional[BeaconReport]:
    for event in extract_events(text):
        if isinstance(event, BeaconReport):
            return event
    return None


def has_beacon(text: str) -> bool:
    """Completion predicate for discovery read cycles."""
    return BEACON_RE.search(strip_ansi(text)) is not None


def prompt_seen(text: str) -> bool:
    """Default completion predicate: the shell printed its prompt again."""
    return strip_ansi(text).rstrip().endswith(PROMPT)


def normalize_identifier(raw: str) -> str:
    """Trim whitespace and strip trailing '0' characters.

    NOTE: this is a blind character strip, not a padding-aware trim. A UUID
    whose last real digits are zeros loses them too. Identifiers already
    stored were normalized this way, so keep it unless they are migrated.
    """
    return raw.strip().rstrip("0")


class LineReassembler:
    """Carries an unterminated trailing line over to the next read cycle.

    Off by default in the controller; enable with ``--reassemble``.
    """

    def __init__(self):
        self._partial = ""

    def feed(self, text: str) -> str:
        """Return ``text`` prefixed with any carried-over fragment.

        The last line is held back when it has no terminator and carries a
        beacon marker without a complete identifier.
        """
        text = self._partial + text
        self._partial = ""
        head, sep, tail = text.rpartition("\n")
        if tail and not has_beacon(tail) and "UUID" in tail:
            self._partial = tail
            return head + sep
        return text

    def reset(self):
        self._partial = ""
