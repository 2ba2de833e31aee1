"""
Session ids and port blocks.

Every QA session gets a block of seven TCP ports derived from a checksum of
its id, so re-running qa-start for the same session lands on the same ports:

    slot = cksum(seed) % 200
    base = 15000 + slot * 20

    functions = base      hosting = base + 1   firestore = base + 2
    ui        = base + 3  otel    = base + 4   hub       = base + 5
    logging   = base + 6

The checksum is the POSIX ``cksum`` CRC, so ids and ports match what the
shell tooling in the repo computes for the same strings.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dev_cli.qa.errors import ConfigurationError

PORT_RANGE_START = 15000
PORT_SLOT_COUNT = 200
PORT_SLOT_WIDTH = 20
SESSION_SUFFIX_MODULUS = 10_000

_INVALID_ID_CHARS = re.compile(r"[^a-z0-9-]")
_CKSUM_POLY = 0x04C11DB7
_MASK32 = 0xFFFFFFFF


def _build_cksum_table() -> list[int]:
    table = []
    for byte in range(256):
        crc = byte << 24
        for _ in range(8):
            if crc & 0x80000000:
                crc = ((crc << 1) ^ _CKSUM_POLY) & _MASK32
            else:
                crc = (crc << 1) & _MASK32
        table.append(crc)
    return table


_CKSUM_TABLE = _build_cksum_table()


def cksum(data: bytes | str) -> int:
    """
    POSIX ``cksum`` CRC of a byte string.

    Unlike zlib's CRC-32 this is unreflected and folds the input length into
    the digest, which is what ``printf '%s' value | cksum`` prints.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")

    crc = 0
    for byte in data:
        crc = ((crc << 8) & _MASK32) ^ _CKSUM_TABLE[((crc >> 24) ^ byte) & 0xFF]

    length = len(data)
    while length:
        crc = ((crc << 8) & _MASK32) ^ _CKSUM_TABLE[((crc >> 24) ^ length) & 0xFF]
        length >>= 8

    return ~crc & _MASK32


def sanitize_id(raw: str) -> str:
    """Lowercase and replace anything outside [a-z0-9-] with '-'."""
    return _INVALID_ID_CHARS.sub("-", raw.lower())


def default_session_id(worktree_root: Path) -> str:
    """Stable session id for a workspace: ``<dir name>-<checksum % 10000>``."""
    name = sanitize_id(worktree_root.name)
    return f"{name}-{cksum(str(worktree_root)) % SESSION_SUFFIX_MODULUS}"


def resolve_session_id(explicit: Optional[str], worktree_root: Path) -> tuple[str, bool]:
    """
    Pick and sanitize the session id for an invocation.

    Returns:
        (sanitized id, whether it was generated from the workspace path)

    Raises:
        ConfigurationError: If the id is empty once sanitized
    """
    generated = False
    if explicit:
        raw = explicit
    else:
        raw = default_session_id(worktree_root)
        generated = True

    session_id = sanitize_id(raw)
    if not session_id:
        raise ConfigurationError("Session ID resolved to empty value after sanitization.")
    return session_id, generated


@dataclass(frozen=True)
class Ports:
    """The seven ports owned by one QA session."""

    functions: int
    hosting: int
    firestore: int
    ui: int
    otel: int
    hub: int
    logging: int

    @classmethod
    def from_base(cls, base: int) -> "Ports":
        return cls(
            functions=base,
            hosting=base + 1,
            firestore=base + 2,
            ui=base + 3,
            otel=base + 4,
            hub=base + 5,
            logging=base + 6,
        )

    @classmethod
    def derive(cls, seed: str) -> "Ports":
        """Deterministic port block for a seed (normally the session id)."""
        slot = cksum(seed) % PORT_SLOT_COUNT
        return cls.from_base(PORT_RANGE_START + slot * PORT_SLOT_WIDTH)

    def emulator_ports(self) -> tuple[int, ...]:
        """Ports bound by the Firebase emulator suite."""
        return (self.functions, self.firestore, self.hosting, self.ui, self.hub, self.logging)
