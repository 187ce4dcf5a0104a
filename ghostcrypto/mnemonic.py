"""
Recovery phrase helpers.

This is a simplified BIP39-like scheme over a 256-word list. It is a backup
display and verification aid only: a phrase does not regenerate the keypairs
it was shown for, and restoring from a phrase creates a new identity.
"""

import hashlib
from typing import List, Sequence

from .errors import ValidationError
from .primitives import random_bytes

SEED_SIZE = 16
WORD_COUNT = 12

WORDLIST = (
    "abandon", "ability", "able", "about", "above", "absent", "absorb", "abstract",
    "absurd", "abuse", "access", "accident", "account", "accuse", "achieve", "acid",
    "acoustic", "acquire", "across", "act", "action", "actor", "actress", "actual",
    "adapt", "add", "addict", "address", "adjust", "admit", "adult", "advance",
    "advice", "aerobic", "affair", "afford", "afraid", "again", "age", "agent",
    "agree", "ahead", "aim", "air", "airport", "aisle", "alarm", "album",
    "alcohol", "alert", "alien", "all", "alley", "allow", "almost", "alone",
    "alpha", "already", "also", "alter", "always", "amateur", "amazing", "among",
    "amount", "amused", "analyst", "anchor", "ancient", "anger", "angle", "angry",
    "animal", "ankle", "announce", "annual", "another", "answer", "antenna", "antique",
    "anxiety", "any", "apart", "apology", "appear", "apple", "approve", "april",
    "arch", "arctic", "area", "arena", "argue", "arm", "armed", "armor",
    "army", "around", "arrange", "arrest", "arrive", "arrow", "art", "artefact",
    "artist", "artwork", "ask", "aspect", "assault", "asset", "assist", "assume",
    "asthma", "athlete", "atom", "attack", "attend", "attitude", "attract", "auction",
    "audit", "august", "aunt", "author", "auto", "autumn", "average", "avocado",
    "avoid", "awake", "aware", "away", "awesome", "awful", "awkward", "axis",
    "baby", "bachelor", "bacon", "badge", "bag", "balance", "balcony", "ball",
    "bamboo", "banana", "banner", "bar", "barely", "bargain", "barrel", "base",
    "basic", "basket", "battle", "beach", "bean", "beauty", "because", "become",
    "beef", "before", "begin", "behave", "behind", "believe", "below", "belt",
    "bench", "benefit", "best", "betray", "better", "between", "beyond", "bicycle",
    "bid", "bike", "bind", "biology", "bird", "birth", "bitter", "black",
    "blade", "blame", "blanket", "blast", "bleak", "bless", "blind", "blood",
    "blossom", "blouse", "blue", "blur", "blush", "board", "boat", "body",
    "boil", "bomb", "bone", "bonus", "book", "boost", "border", "boring",
    "borrow", "boss", "bottom", "bounce", "box", "boy", "bracket", "brain",
    "brand", "brass", "brave", "bread", "breeze", "brick", "bridge", "brief",
    "bright", "bring", "brisk", "broccoli", "broken", "bronze", "broom", "brother",
    "brown", "brush", "bubble", "buddy", "budget", "buffalo", "build", "bulb",
    "bulk", "bullet", "bundle", "bunker", "burden", "burger", "burst", "bus",
    "business", "busy", "butter", "buyer", "buzz", "cabbage", "cabin", "cable",
)

_WORD_INDEX = {word: i for i, word in enumerate(WORDLIST)}


def _normalize(words: Sequence[str]) -> List[str]:
    return [word.lower().strip() for word in words]


def generate_recovery_seed() -> bytes:
    """Fresh 16-byte seed for a new recovery phrase"""
    return random_bytes(SEED_SIZE)


def entropy_to_mnemonic(seed: bytes) -> List[str]:
    """
    Convert a seed to 12 words.

    Word i mixes seed byte i with byte i+1; the last word mixes in the first
    byte of SHA-256(seed) as a checksum.

    Args:
        seed: At least 16 bytes; only the first 16 are used

    Returns:
        List of 12 words from WORDLIST
    """
    if len(seed) < SEED_SIZE:
        raise ValidationError(f"Seed must be at least {SEED_SIZE} bytes")
    entropy = seed[:SEED_SIZE]
    checksum = hashlib.sha256(entropy).digest()[0]

    words = []
    for i in range(WORD_COUNT):
        mix = entropy[i + 1] if i < WORD_COUNT - 1 else checksum
        words.append(WORDLIST[(entropy[i] + mix) % len(WORDLIST)])
    return words


def validate_mnemonic(words: Sequence[str]) -> bool:
    """True if there are exactly 12 entries and every one is in WORDLIST"""
    if len(words) != WORD_COUNT:
        return False
    return all(word in _WORD_INDEX for word in _normalize(words))


def split_phrase(phrase: str) -> List[str]:
    """Split a typed phrase on whitespace"""
    return phrase.strip().lower().split()


def mnemonic_to_entropy(words: Sequence[str]) -> bytes:
    """
    Simplified 16-byte reconstruction from word indices.

    This is NOT the inverse of entropy_to_mnemonic.

    Raises:
        ValidationError: If the phrase is not 12 known words
    """
    if len(words) != WORD_COUNT:
        raise ValidationError("Invalid mnemonic: expected 12 words")
    indices = []
    for word in _normalize(words):
        if word not in _WORD_INDEX:
            raise ValidationError("Invalid word in mnemonic")
        indices.append(_WORD_INDEX[word])

    return bytes(
        (indices[i % WORD_COUNT] * 13 + indices[(i + 1) % WORD_COUNT] * 37) % 256
        for i in range(SEED_SIZE)
    )


def mnemonic_to_seed(words: Sequence[str]) -> bytes:
    """
    Deterministic 32-byte digest of a phrase, used to verify it later.

    The phrase is hashed, then the hex text of that digest is hashed again.
    """
    joined = " ".join(_normalize(words))
    first = hashlib.sha256(joined.encode("utf-8")).hexdigest()
    return hashlib.sha256(first.encode("ascii")).digest()
