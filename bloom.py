"""Per-(user, course) Bloom filter of words already pushed to a learner.

Bit positions come from one SHA-256 digest split into two 64-bit halves and
combined with double hashing: probe ``i`` is ``(h1 + i * h2) mod m``. Bits are
only ever set, so a word that was added always tests as contained.
"""
import hashlib
import math
import os
from typing import Iterable, Iterator, List, Optional

from errors import FilterCorrupt

# --- Config ---
BLOOM_FILTER_SIZE = int(os.environ.get("LANGHELPER_BLOOM_SIZE", "8192"))
BLOOM_FILTER_HASH_COUNT = int(os.environ.get("LANGHELPER_BLOOM_HASH_COUNT", "5"))

_MASK64 = (1 << 64) - 1


def owner_key(user_id: str, course: str) -> str:
    return f"{user_id}#{course}"


def byte_length(size: int) -> int:
    return (size + 7) // 8


class MembershipFilter:
    """Fixed-size bit array recording which words an owner has already seen."""

    def __init__(self, owner: str, size: int = None, hash_count: int = None,
                 bits: Optional[bytes] = None, updated_at: str = ""):
        size = BLOOM_FILTER_SIZE if size is None else size
        hash_count = BLOOM_FILTER_HASH_COUNT if hash_count is None else hash_count
        if size <= 0:
            raise ValueError("size must be positive")
        if hash_count <= 0:
            raise ValueError("hash_count must be positive")

        self.owner = owner
        self.size = size
        self.hash_count = hash_count
        self.updated_at = updated_at
        if bits is None:
            self.bits = bytearray(byte_length(size))
        else:
            if len(bits) != byte_length(size):
                raise FilterCorrupt(
                    f"filter {owner}: expected {byte_length(size)} bytes, got {len(bits)}"
                )
            self.bits = bytearray(bits)

    @classmethod
    def create(cls, owner: str, size: int = None, hash_count: int = None) -> "MembershipFilter":
        return cls(owner, size=size, hash_count=hash_count)

    def _positions(self, word: str) -> Iterator[int]:
        digest = hashlib.sha256(word.encode("utf-8")).digest()
        h1 = int.from_bytes(digest[:8], "big")
        h2 = int.from_bytes(digest[8:16], "big")
        for i in range(self.hash_count):
            yield ((h1 + i * h2) & _MASK64) % self.size

    def add(self, word: str) -> None:
        for pos in self._positions(word):
            self.bits[pos >> 3] |= 1 << (pos & 7)

    def add_all(self, words: Iterable[str]) -> None:
        for word in words:
            self.add(word)

    def contains(self, word: str) -> bool:
        for pos in self._positions(word):
            if not self.bits[pos >> 3] & (1 << (pos & 7)):
                return False
        return True

    __contains__ = contains

    def filter_novel(self, words: Iterable[str]) -> List[str]:
        """Return the words not yet in the filter, in input order."""
        return [w for w in words if not self.contains(w)]

    def set_bit_count(self) -> int:
        return sum(bin(b).count("1") for b in self.bits)

    def estimated_false_positive_rate(self, inserted: Optional[int] = None) -> float:
        """Estimate the false-positive rate.

        With ``inserted`` the textbook ``(1 - e^(-kn/m))^k`` is used, otherwise
        the current fill ratio raised to ``k``.
        """
        if inserted is not None:
            return (1 - math.exp(-self.hash_count * inserted / self.size)) ** self.hash_count
        return (self.set_bit_count() / self.size) ** self.hash_count

    def copy(self) -> "MembershipFilter":
        return MembershipFilter(self.owner, self.size, self.hash_count,
                                bytes(self.bits), self.updated_at)

    # --- Persistence ---

    def to_record(self) -> dict:
        return {
            "owner": self.owner,
            "bits": bytes(self.bits),
            "size": self.size,
            "hashCount": self.hash_count,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: dict) -> "MembershipFilter":
        try:
            size = int(record["size"])
            hash_count = int(record["hashCount"])
            bits = record["bits"]
        except (KeyError, TypeError, ValueError) as e:
            raise FilterCorrupt(f"malformed filter record: {e}") from e
        if size <= 0 or hash_count <= 0 or bits is None:
            raise FilterCorrupt(
                f"filter {record.get('owner')}: invalid size={size} hashCount={hash_count}"
            )
        return cls(record.get("owner", ""), size, hash_count, bytes(bits),
                   record.get("updatedAt") or "")

    def __repr__(self):
        return f"MembershipFilter(owner={self.owner!r}, size={self.size}, hash_count={self.hash_count})"


def optimal_size(expected_elements: int, false_positive_rate: float) -> int:
    """m = -(n * ln p) / (ln 2)^2"""
    if expected_elements <= 0 or not 0 < false_positive_rate < 1:
        raise ValueError("need expected_elements > 0 and 0 < false_positive_rate < 1")
    return math.ceil(-expected_elements * math.log(false_positive_rate) / (math.log(2) ** 2))


def optimal_hash_count(size: int, expected_elements: int) -> int:
    """k = (m / n) * ln 2, at least 1."""
    if size <= 0 or expected_elements <= 0:
        raise ValueError("size and expected_elements must be positive")
    return max(1, round(size / expected_elements * math.log(2)))
