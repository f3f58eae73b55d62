"""
Text normalization - fold transcripts and catalog examples to one form
"""

import re
from typing import List


# Contractions expanded before punctuation is stripped
EXPANSIONS = {
    "can't": "cannot",
    "won't": "will not",
    "don't": "do not",
    "i'm": "i am",
    "you're": "you are",
    "it's": "it is",
    "that's": "that is",
    "what's": "what is",
    "who's": "who is",
    "where's": "where is",
    "how's": "how is",
    "let's": "let us",
    "gonna": "going to",
    "wanna": "want to",
    "gimme": "give me",
    "lemme": "let me",
}

# Filler tokens whisper tends to keep
FILLERS = {"um", "uh", "umm", "uhh", "er", "erm", "hmm"}

_APOSTROPHES = str.maketrans({"’": "'", "‘": "'", "`": "'"})
_SLOT_RE = re.compile(r"\{(\w+)\}")


def normalize_text(text: str) -> str:
    """
    Case/punctuation fold:
    - lowercase
    - expand contractions
    - punctuation to spaces
    - drop fillers
    """
    text = text.translate(_APOSTROPHES).lower().strip()

    for contraction, expansion in EXPANSIONS.items():
        text = re.sub(rf"\b{re.escape(contraction)}\b", expansion, text)

    # Keep word characters only; apostrophes inside words are dropped too
    text = text.replace("'", "")
    text = re.sub(r"[^\w\s]", " ", text)

    words = [w for w in text.split() if w not in FILLERS]
    return " ".join(words)


def tokenize(text: str) -> List[str]:
    """Split normalized text into tokens"""
    return normalize_text(text).split()


def normalize_example(example: str) -> List[str]:
    """
    Tokenize a catalog example, keeping ``{slot}`` placeholders intact.

    "Set volume to {level}!" -> ["set", "volume", "to", "{level}"]
    """
    tokens: List[str] = []
    last = 0
    for match in _SLOT_RE.finditer(example):
        tokens.extend(tokenize(example[last:match.start()]))
        tokens.append("{" + match.group(1) + "}")
        last = match.end()
    tokens.extend(tokenize(example[last:]))
    return tokens


def is_slot(token: str) -> bool:
    return bool(_SLOT_RE.fullmatch(token))


def slot_name(token: str) -> str:
    return token[1:-1]
