"""Tests for the gateway response line scanner."""

from __future__ import annotations

from mesh_provisioner.constants import PROVISIONED_RE
from mesh_provisioner.parser import (
    AddressReport,
    BeaconReport,
    LineReassembler,
    extract_events,
    first_beacon,
    has_beacon,
    normalize_identifier,
    prompt_seen,
)

UUID = "aabbccddeeff00112233445566778899"


def test_address_report() -> None:
    events = list(extract_events("Received message from 0x0A1B: leds 1"))

    assert events == [AddressReport(token="0x0A1B",
                                    line="Received message from 0x0A1B: leds 1")]
    assert events[0].address == 0x0A1B


def test_line_without_hex_token_yields_nothing() -> None:
    assert list(extract_events("Bluetooth initialized\r\nMesh initialized\r\n")) == []


def test_beacon_report_before_normalization() -> None:
    events = list(extract_events(f"PB-GATT UUID {UUID}"))

    assert len(events) == 1
    assert isinstance(events[0], BeaconReport)
    assert events[0].identifier == UUID


def test_beacon_line_with_oob_info_is_not_an_address() -> None:
    events = list(extract_events(f"PB-ADV UUID {UUID}, OOB Info 0x0000, URI Hash 0x0"))

    assert [type(e) for e in events] == [BeaconReport]


def test_only_first_beacon_per_cycle() -> None:
    other = "11" * 16
    text = f"PB-ADV UUID {UUID}\nAddr: 0x0003\nPB-ADV UUID {other}\n"
    events = list(extract_events(text))

    assert [type(e) for e in events] == [BeaconReport, AddressReport]
    assert first_beacon(text).identifier == UUID


def test_truncated_identifier_yields_no_event() -> None:
    assert first_beacon(f"PB-ADV UUID {UUID[:20]}") is None
    assert not has_beacon(f"PB-ADV UUID {UUID[:20]}")


def test_longer_hex_run_is_not_an_identifier() -> None:
    assert first_beacon(f"PB-ADV UUID {UUID}ff") is None


def test_address_token_longer_than_four_digits_ignored() -> None:
    assert list(extract_events("value 0x12345")) == []


def test_colour_codes_are_stripped() -> None:
    events = list(extract_events("\x1b[1;32mAddr: 0x0002\x1b[m\r\n"))

    assert events[0].token == "0x0002"


def test_events_are_lazy() -> None:
    gen = extract_events("Addr: 0x0002\n")

    assert next(gen).token == "0x0002"


def test_normalize_strips_whitespace_and_trailing_zeros() -> None:
    assert normalize_identifier("  AABB00  ") == "AABB"
    # Blind strip: a real trailing zero digit goes too
    assert normalize_identifier("abc10") == "abc1"
    assert normalize_identifier(UUID) == UUID


def test_prompt_seen() -> None:
    assert prompt_seen("leds 1\r\nLED set to: on\r\n\x1b[1;32muart:~$ \x1b[m")
    assert not prompt_seen("leds 1\r\nLED set to: on\r\n")


def test_reassembler_joins_split_beacon() -> None:
    reassembler = LineReassembler()

    first = reassembler.feed(f"noise\nPB-ADV UUID {UUID[:10]}")
    second = reassembler.feed(f"{UUID[10:]}\n")

    assert first_beacon(first) is None
    assert first_beacon(second).identifier == UUID


def test_reassembler_passes_complete_text_through() -> None:
    reassembler = LineReassembler()
    text = "Addr: 0x0002\nuart:~$ "

    assert reassembler.feed(text) == text


def test_completion_line_ignores_unprovisioned_devices() -> None:
    assert PROVISIONED_RE.search("Provisioning complete. Address: 0x0002")
    assert PROVISIONED_RE.search("Node 0x0002 provisioned")
    assert not PROVISIONED_RE.search("Unprovisioned device beacon seen")
    assert not PROVISIONED_RE.search("unprovisioned beacon 0x0000")
