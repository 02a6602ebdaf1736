"""Word supply loop: collect vocabulary a learner has not been sent yet.

The generator is asked for ``3 * N`` words first and ``5 * N`` on every later
attempt, at most ``MAX_ATTEMPTS`` times. Survivors of the owner's Bloom filter
are kept in generator order. A short but non-empty result is still a success.
"""
import time
from typing import Awaitable, Callable, Iterable, List, Optional, Union

from log import get_logger
from bloom import MembershipFilter
from errors import SupplyExhausted
from models import CandidateWord

logger = get_logger("langhelper.supply")

MAX_ATTEMPTS = 5
FIRST_BATCH_FACTOR = 3
RETRY_BATCH_FACTOR = 5

Generator = Callable[[str, int, int], Awaitable[List[CandidateWord]]]


def lexical_key(word: Union[CandidateWord, str]) -> str:
    """The exact, case-sensitive text used for membership tests."""
    return word if isinstance(word, str) else word.word


def batch_size(desired_count: int, attempt: int) -> int:
    factor = FIRST_BATCH_FACTOR if attempt == 1 else RETRY_BATCH_FACTOR
    return desired_count * factor


def _load_or_create(owner: str, store) -> MembershipFilter:
    bloom: Optional[MembershipFilter] = store.load(owner)
    if bloom is None:
        logger.info("No filter yet, starting fresh", extra={"component": "supply", "detail": owner})
        return MembershipFilter.create(owner)
    return bloom


async def supply_words(owner: str, desired_count: int, level: int, generate: Generator,
                       store, course: str) -> List[CandidateWord]:
    """Return up to ``desired_count`` words not previously delivered to ``owner``.

    The stored filter is only read here; delivered words are recorded with
    :func:`record_delivered` once the caller has pushed them.

    Raises:
        ValueError: ``desired_count`` is not positive.
        SupplyExhausted: no novel word was found in any attempt.
        GeneratorUnavailable, StoreUnavailable, FilterCorrupt: propagated as is.
    """
    if desired_count <= 0:
        raise ValueError(f"desired_count must be positive, got {desired_count}")

    start = time.time()
    seen = _load_or_create(owner, store).copy()
    accumulated: List[CandidateWord] = []

    attempt = 0
    while attempt < MAX_ATTEMPTS:
        attempt += 1
        size = batch_size(desired_count, attempt)
        batch = await generate(course, size, level)

        accepted = 0
        novel = set(seen.filter_novel(lexical_key(word) for word in batch))
        for word in batch:
            key = lexical_key(word)
            if not key or key not in novel:
                continue
            # Later words in this run must not repeat earlier ones
            novel.discard(key)
            seen.add(key)
            accumulated.append(word)
            accepted += 1
            if len(accumulated) >= desired_count:
                break

        logger.info("Supply attempt", extra={
            "component": "supply", "detail": owner, "attempt": attempt,
            "count": accepted,
        })
        if len(accumulated) >= desired_count:
            break

    duration_ms = round((time.time() - start) * 1000)
    if not accumulated:
        logger.error("No novel words after all attempts", extra={
            "component": "supply", "detail": owner, "attempt": attempt, "duration_ms": duration_ms,
        })
        raise SupplyExhausted(f"no novel words for {owner} after {attempt} attempts")

    if len(accumulated) < desired_count:
        logger.warning("Insufficient novel words, delivering a short list", extra={
            "component": "supply", "detail": owner, "count": len(accumulated),
            "attempt": attempt, "duration_ms": duration_ms,
        })
    else:
        logger.info("Supply complete", extra={
            "component": "supply", "detail": owner, "count": len(accumulated),
            "attempt": attempt, "duration_ms": duration_ms,
        })
    return accumulated


def record_delivered(owner: str, words: Iterable[Union[CandidateWord, str]], store) -> MembershipFilter:
    """Add delivered words to the owner's filter and persist the whole blob."""
    bloom = _load_or_create(owner, store)
    bloom.add_all(lexical_key(w) for w in words)
    store.save(bloom)
    return bloom
