"""Bloom filter membership cache.

A fixed-size bit vector answering "maybe present" / "definitely absent".
Sizing follows the textbook formulas:

    m = ceil(-n * ln(p) / ln(2)^2)     bits
    k = round(m / n * ln(2))           hash functions

and the k bit positions come from double hashing (h1 + i * h2) mod m over
a 128-bit BLAKE2b digest. ``m`` and ``k`` are fixed for the lifetime of a
snapshot; resizing means rebuilding from the authoritative store.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import math
import struct
import threading
import zlib
from collections.abc import Iterable, Iterator
from dataclasses import asdict, dataclass

from uniqname.exceptions import ConfigurationError, DecodeError

SNAPSHOT_FORMAT = "uniqname.bloom"
SNAPSHOT_VERSION = 1


@dataclass(frozen=True)
class CacheStats:
    """Read-only view of a cache's size and occupancy."""

    item_count: int
    capacity: int
    error_rate: float
    estimated_false_positive_rate: float
    num_bits: int
    num_hashes: int
    fill_ratio: float

    def as_dict(self) -> dict[str, float | int]:
        return asdict(self)


def optimal_parameters(capacity: int, error_rate: float) -> tuple[int, int]:
    """Return (num_bits, num_hashes) for the given capacity and error rate."""
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
        msg = f"Capacity must be a positive integer, got {capacity!r}"
        raise ConfigurationError(msg)
    if not 0 < error_rate < 1:
        msg = f"Error rate must be in (0, 1), got {error_rate!r}"
        raise ConfigurationError(msg)

    num_bits = math.ceil(-capacity * math.log(error_rate) / (math.log(2) ** 2))
    num_hashes = max(1, round(num_bits / capacity * math.log(2)))
    return num_bits, num_hashes


class MembershipCache:
    """Approximate set of normalized usernames with no false negatives."""

    def __init__(self, capacity: int, error_rate: float, bits: bytearray | None = None, count: int = 0) -> None:
        self.capacity = capacity
        self.error_rate = error_rate
        self.num_bits, self.num_hashes = optimal_parameters(capacity, error_rate)

        expected_len = (self.num_bits + 7) // 8
        if bits is None:
            bits = bytearray(expected_len)
        elif len(bits) != expected_len:
            msg = f"Bit vector holds {len(bits)} bytes, expected {expected_len}"
            raise ConfigurationError(msg)

        self._bits = bits
        self._count = count
        self._lock = threading.Lock()

    @classmethod
    def create(cls, capacity: int, error_rate: float) -> MembershipCache:
        """Build an empty cache sized for ``capacity`` items at ``error_rate``."""
        return cls(capacity, error_rate)

    # -- hashing -----------------------------------------------------------

    def _positions(self, item: str) -> Iterator[int]:
        digest = hashlib.blake2b(item.encode("utf-8"), digest_size=16).digest()
        h1, h2 = struct.unpack("<QQ", digest)
        # Odd step, so probes are not confined to one parity class.
        h2 |= 1
        for i in range(self.num_hashes):
            yield (h1 + i * h2) % self.num_bits

    def _insert(self, item: str) -> bool:
        flipped = False
        bits = self._bits
        for pos in self._positions(item):
            byte_i, mask = pos >> 3, 1 << (pos & 7)
            if not bits[byte_i] & mask:
                bits[byte_i] |= mask
                flipped = True
        if flipped:
            self._count += 1
        return flipped

    # -- public API --------------------------------------------------------

    def add(self, item: str) -> bool:
        """Insert an item. Returns True if it was not already (maybe) present."""
        with self._lock:
            return self._insert(item)

    def add_bulk(self, items: Iterable[str]) -> int:
        """Insert many items under a single lock. Returns how many were new."""
        added = 0
        with self._lock:
            for item in items:
                if self._insert(item):
                    added += 1
        return added

    def may_contain(self, item: str) -> bool:
        """True if the item may have been added, False if it definitely was not."""
        bits = self._bits
        return all(bits[pos >> 3] & (1 << (pos & 7)) for pos in self._positions(item))

    def __contains__(self, item: object) -> bool:
        return isinstance(item, str) and self.may_contain(item)

    def __len__(self) -> int:
        return self._count

    @property
    def item_count(self) -> int:
        return self._count

    def estimated_false_positive_rate(self) -> float:
        """(1 - e^(-k*n/m))^k for the current item count."""
        if self._count == 0:
            return 0.0
        exponent = -self.num_hashes * self._count / self.num_bits
        return (1 - math.exp(exponent)) ** self.num_hashes

    def stats(self) -> CacheStats:
        set_bits = int.from_bytes(self._bits, "little").bit_count()
        return CacheStats(
            item_count=self._count,
            capacity=self.capacity,
            error_rate=self.error_rate,
            estimated_false_positive_rate=self.estimated_false_positive_rate(),
            num_bits=self.num_bits,
            num_hashes=self.num_hashes,
            fill_ratio=set_bits / self.num_bits,
        )

    # -- snapshot ----------------------------------------------------------

    def serialize(self) -> str:
        """Encode the cache as a self-describing JSON string."""
        with self._lock:
            raw = bytes(self._bits)
            count = self._count
        payload = {
            "format": SNAPSHOT_FORMAT,
            "version": SNAPSHOT_VERSION,
            "capacity": self.capacity,
            "error_rate": self.error_rate,
            "num_bits": self.num_bits,
            "num_hashes": self.num_hashes,
            "count": count,
            "bits": base64.b64encode(zlib.compress(raw)).decode("ascii"),
        }
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def deserialize(cls, blob: str | bytes) -> MembershipCache:
        """Rebuild a cache from :meth:`serialize` output.

        Raises:
            DecodeError: If the blob is malformed, of another format/version,
                or its parameters do not match its bit vector.
        """
        try:
            data = json.loads(blob)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
            msg = f"Snapshot is not valid JSON: {e}"
            raise DecodeError(msg) from e

        if not isinstance(data, dict) or data.get("format") != SNAPSHOT_FORMAT:
            msg = "Snapshot format tag missing or unknown"
            raise DecodeError(msg)
        if data.get("version") != SNAPSHOT_VERSION:
            msg = f"Unsupported snapshot version: {data.get('version')!r}"
            raise DecodeError(msg)

        try:
            capacity = data["capacity"]
            error_rate = float(data["error_rate"])
            count = int(data["count"])
            bits = bytearray(zlib.decompress(base64.b64decode(data["bits"], validate=True)))
        except (KeyError, TypeError, ValueError, binascii.Error, zlib.error) as e:
            msg = f"Snapshot payload is incomplete or corrupt: {e}"
            raise DecodeError(msg) from e

        try:
            cache = cls(capacity, error_rate, bits=bits, count=count)
        except ConfigurationError as e:
            raise DecodeError(str(e)) from e

        if (cache.num_bits, cache.num_hashes) != (data.get("num_bits"), data.get("num_hashes")):
            msg = "Snapshot sizing does not match its declared capacity and error rate"
            raise DecodeError(msg)
        if count < 0:
            msg = f"Snapshot item count is negative: {count}"
            raise DecodeError(msg)
        return cache
