"""Candidate generators for username suggestions.

Each strategy is a pure function of a :class:`StrategyContext` yielding
candidate strings. All randomness comes from ``ctx.rng`` so a seeded
``random.Random`` replays the same candidates. Strategies may yield names
that are invalid or duplicated; the allocator filters them.
"""

from __future__ import annotations

import random
import string
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from uniqname.usernames.naming import SEPARATOR, USERNAME_CHARSET, fit, random_token

CURATED_NUMBERS = (1, 2, 3, 7, 10, 11, 12, 13, 21, 22, 23, 42, 77, 88, 99, 100, 101, 123, 321, 777)
CURATED_LABELS = ("dev", "hq", "io", "app", "pro", "official", "real", "online", "live", "team", "zone", "hub")
WORD_TOKENS = (
    "ace", "arc", "bit", "bolt", "byte", "cat", "code", "dash", "echo", "fox",
    "jet", "kai", "leo", "max", "neo", "nova", "owl", "pix", "ray", "sky",
    "sol", "star", "sun", "vibe", "wave", "wolf", "zen", "zap",
)
PREFIXES = ("the", "its", "im", "iam", "mr", "ms", "hey", "just", "real", "not")
SUFFIXES = ("x", "xo", "yo", "hq", "ok", "go", "up", "tv", "lab", "ify")

LONG_ROOT_LENGTH = 8


@dataclass(frozen=True)
class StrategyContext:
    """Inputs shared by every strategy for one suggestion request."""

    root: str
    rng: random.Random
    year: int


Strategy = Callable[[StrategyContext], Iterator[str]]


def random_alnum_suffix(ctx: StrategyContext, budget: int = 10) -> Iterator[str]:
    """root + 2-5 random alphanumerics, with or without separator."""
    for _ in range(budget):
        sep = ctx.rng.choice(("", SEPARATOR))
        yield fit(ctx.root, sep + random_token(ctx.rng, ctx.rng.randint(2, 5)))


def curated_numbers(ctx: StrategyContext) -> Iterator[str]:
    numbers = list(CURATED_NUMBERS)
    ctx.rng.shuffle(numbers)
    for n in numbers:
        yield fit(ctx.root, str(n))
        yield fit(ctx.root, f"{SEPARATOR}{n}")


def random_digits(ctx: StrategyContext, budget: int = 10) -> Iterator[str]:
    """root + a random 2-4 digit number."""
    for _ in range(budget):
        yield fit(ctx.root, str(ctx.rng.randint(10, 9999)))


def curated_labels(ctx: StrategyContext) -> Iterator[str]:
    labels = list(CURATED_LABELS)
    ctx.rng.shuffle(labels)
    for label in labels:
        yield fit(ctx.root, label)
        yield fit(ctx.root, f"{SEPARATOR}{label}")


def midpoint_insertion(ctx: StrategyContext, budget: int = 8) -> Iterator[str]:
    """Insert a character or digit in the middle of the root."""
    root = ctx.root
    if len(root) < 2:
        return
    mid = len(root) // 2
    for _ in range(budget):
        filler = ctx.rng.choice((SEPARATOR, ctx.rng.choice(string.digits), ctx.rng.choice(USERNAME_CHARSET)))
        yield fit(root[:mid], filler + root[mid:])


def random_word(ctx: StrategyContext, budget: int = 8) -> Iterator[str]:
    for _ in range(budget):
        word = ctx.rng.choice(WORD_TOKENS)
        yield fit(ctx.root, ctx.rng.choice(("", SEPARATOR)) + word)


def truncated_root(ctx: StrategyContext, budget: int = 6) -> Iterator[str]:
    """Shortened root + random suffix, for long roots only."""
    root = ctx.root
    if len(root) < LONG_ROOT_LENGTH:
        return
    for _ in range(budget):
        cut = ctx.rng.randint(3, max(3, len(root) // 2 + 1))
        yield fit(root[:cut], random_token(ctx.rng, ctx.rng.randint(2, 4)))


def year_variants(ctx: StrategyContext) -> Iterator[str]:
    for year in (str(ctx.year), f"{ctx.year % 100:02d}"):
        yield fit(ctx.root, year)
        yield fit(ctx.root, f"{SEPARATOR}{year}")


def affixes(ctx: StrategyContext, budget: int = 9) -> Iterator[str]:
    """Random prefix only, suffix only, or both."""
    for i in range(budget):
        prefix = ctx.rng.choice(PREFIXES)
        suffix = ctx.rng.choice(SUFFIXES)
        mode = i % 3
        if mode == 0:
            yield fit(ctx.root, head=prefix + ctx.rng.choice(("", SEPARATOR)))
        elif mode == 1:
            yield fit(ctx.root, ctx.rng.choice(("", SEPARATOR)) + suffix)
        else:
            yield fit(ctx.root, suffix, head=prefix)


def composite(ctx: StrategyContext, budget: int = 10) -> Iterator[str]:
    """Root fragments mixed with random words and numbers."""
    root = ctx.root
    for _ in range(budget):
        fragment = root[: ctx.rng.randint(min(2, len(root)), max(2, len(root)))]
        word = ctx.rng.choice(WORD_TOKENS)
        number = str(ctx.rng.randint(1, 999))
        parts = [fragment, word, number]
        ctx.rng.shuffle(parts)
        joiner = ctx.rng.choice(("", SEPARATOR))
        yield fit(joiner.join(p for p in parts if p))


# Fixed priority order.
STRATEGIES: tuple[Strategy, ...] = (
    random_alnum_suffix,
    curated_numbers,
    random_digits,
    curated_labels,
    midpoint_insertion,
    random_word,
    truncated_root,
    year_variants,
    affixes,
    composite,
)
