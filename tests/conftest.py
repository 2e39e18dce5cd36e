"""
Dice Game - Test Configuration and Fixtures

Shared dice catalogues and deterministic randomness for the engine tests.
"""

import pytest

from dice_game import CryptoProvider, Die, FairRandomGenerator


# =============================================================================
# DICE CATALOGUES
# =============================================================================

@pytest.fixture
def non_transitive_dice() -> list[Die]:
    """Classic triple: die 0 beats die 1, die 1 beats die 2, die 2 beats die 0."""
    return [
        Die((2, 2, 4, 4, 9, 9)),
        Die((1, 1, 6, 6, 8, 8)),
        Die((3, 3, 5, 5, 7, 7)),
    ]


@pytest.fixture
def identical_dice() -> list[Die]:
    """Three standard dice, so equal indices always produce a tie."""
    return [Die((1, 2, 3, 4, 5, 6)) for _ in range(3)]


# =============================================================================
# DETERMINISTIC RANDOMNESS
# =============================================================================

class ScriptedCrypto(CryptoProvider):
    """Crypto provider whose committed values come from a fixed script."""

    def __init__(self, values):
        self.values = iter(values)

    def generate_secure_random(self, max_val: int) -> int:
        value = next(self.values)
        assert 0 <= value < max_val
        return value


class FirstChoice:
    """Stand-in for random.Random that always picks the first candidate."""

    def choice(self, seq):
        return seq[0]


class LastChoice:
    def choice(self, seq):
        return seq[-1]


@pytest.fixture
def scripted_factory():
    """
    Build a generator factory committing to the given values in order.

    Each generator shares one script, so the sequence spans the coin toss
    and both throws of a session.
    """
    def build(*values):
        crypto = ScriptedCrypto(values)
        return lambda: FairRandomGenerator(crypto=crypto)
    return build


@pytest.fixture
def first_choice() -> FirstChoice:
    return FirstChoice()


@pytest.fixture
def last_choice() -> LastChoice:
    return LastChoice()
