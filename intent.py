"""
intent.py — Garden Walk · Verbal intent classifiers
===================================================
Tiny pure classifiers over short user utterances, used to let the user accept
or decline the photo side-flow by voice, plus the cue detectors that open that
flow and that recognise the assistant's sign-off.

``is_affirmative`` and ``is_negative`` are independent.  Both may be False
for an ambiguous reply ("I think so but maybe not"); callers treat "neither"
as an ordinary outcome.
"""

from __future__ import annotations

import logging

log = logging.getLogger("garden_walk.intent")

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

AFFIRMATIONS: frozenset[str] = frozenset({
    "yes", "yeah", "yep", "sure", "okay", "ok", "alright", "yup",
})

# Offers to show a photo.  Multi-word, so substring matching is safe.
PHOTO_OFFER_PHRASES: tuple[str, ...] = (
    "let me show you",
    "let me take",
    "i'll take",
    "take a picture",
    "take a photo",
    "show you the",
)

NEGATIONS: frozenset[str] = frozenset({"no", "nope", "nah"})

DEFERRAL_PHRASES: tuple[str, ...] = (
    "not now",
    "maybe later",
    "skip that",
    "skip this",
    "let's skip",
)

# Assistant asking for a photo.
PHOTO_REQUEST_PHRASES: tuple[str, ...] = (
    "show me a picture",
    "show me a photo",
    "send me a photo",
    "take a picture",
    "like to see",
    "see a photo",
    "see a picture",
    "photo of",
    "picture of",
    "send a photo",
)

# User volunteering a photo.
PHOTO_VOLUNTEER_PHRASES: tuple[str, ...] = (
    "show you",
    "take a picture",
    "take a photo",
    "send a picture",
    "send you a photo",
    "upload",
    "let me show",
)

# Broader decline vocabulary while the photo chooser is open.
PHOTO_DECLINE_PHRASES: tuple[str, ...] = (
    "don't want",
    "no photo",
    "no picture",
    "can't take",
    "skip",
    "not right now",
    "maybe later",
    "no thanks",
    "never mind",
    "without a photo",
    "without photo",
)

WRAP_UP_PHRASES: tuple[str, ...] = ("happy gardening", "happygardening")


def _normalise(text: str) -> str:
    return text.strip().lower().replace("’", "'")


# ---------------------------------------------------------------------------
# Classifiers
# ---------------------------------------------------------------------------

def is_affirmative(text: str) -> bool:
    """Return True when the utterance accepts an offer.

    Matches when the normalised text:
      • is an affirmation word, optionally followed by "." or "!"
        ("yes", "Sure!"),
      • starts with an affirmation word followed by a space or a comma
        ("yeah, go ahead", "ok let me grab it"), or
      • contains a photo-offer phrase anywhere ("hang on, let me take one").

    Affirmations are anchored at the start so "eyes" or "unsure" never count.
    """
    normalised = _normalise(text)
    if not normalised:
        return False

    for word in AFFIRMATIONS:
        if normalised in (word, f"{word}.", f"{word}!"):
            return True
        if normalised.startswith((f"{word} ", f"{word},")):
            return True

    for phrase in PHOTO_OFFER_PHRASES:
        if phrase in normalised:
            log.debug("event=affirmative_phrase match=%r text=%.60r", phrase, text)
            return True
    return False


def is_negative(text: str) -> bool:
    """Return True when the utterance declines or defers.

    A bare negation ("no", "Nope.", "nah!") must be the whole utterance;
    "no, wait, actually yes" is not a refusal.  Deferral phrases ("maybe
    later", "let's skip that") match anywhere.
    """
    normalised = _normalise(text)
    if not normalised:
        return False

    if any(normalised in (word, f"{word}.", f"{word}!") for word in NEGATIONS):
        return True

    return any(phrase in normalised for phrase in DEFERRAL_PHRASES)


# ---------------------------------------------------------------------------
# Cue detectors
# ---------------------------------------------------------------------------

def is_photo_request(text: str, role: str) -> bool:
    """Does this utterance bring up sharing a photo?

    The assistant asks ("would you like to show me a picture?"); the user
    volunteers ("let me show you").  Each side has its own vocabulary.
    """
    lower = _normalise(text)
    phrases = PHOTO_REQUEST_PHRASES if role == "assistant" else PHOTO_VOLUNTEER_PHRASES
    return any(phrase in lower for phrase in phrases)


def is_photo_decline(text: str) -> bool:
    """Decline while the photo chooser is showing."""
    lower = _normalise(text)
    return is_negative(text) or any(phrase in lower for phrase in PHOTO_DECLINE_PHRASES)


def is_wrap_up(text: str) -> bool:
    """Has the assistant signed off the walk?"""
    lower = _normalise(text)
    if any(phrase in lower for phrase in WRAP_UP_PHRASES):
        return True
    return "happy" in lower and "garden" in lower
