import re
import struct
import threading
import logging
from typing import List, Optional

import numpy as np

from config import BOS_ID, EOS_ID, UNK_ID, BYTE_FALLBACK_OFFSET
from errors import InvalidInput, InvalidVocabulary

logger = logging.getLogger(__name__)

# raw byte tokens look like '<0x01>'
BYTE_PIECE = re.compile(r"<0x([0-9A-Fa-f]{2})>")


def load_vocabulary(path, vocab_size: int, header: bool = False):
    """
    Read ``vocab_size`` records of ``{float32 score}{int32 len}{len bytes}``.

    ``header`` skips the int32 max_token_length that llama2.c's exporter
    writes in front of the records.
    """
    logger.info(f"Loading vocabulary from {path}")
    with open(path, "rb") as f:
        data = f.read()

    offset = 0
    if header:
        if len(data) < 4:
            raise InvalidVocabulary(f"{path}: missing max_token_length header")
        offset = 4

    vocab = []
    scores = np.zeros(vocab_size, dtype=np.float32)
    for i in range(vocab_size):
        if offset + 8 > len(data):
            raise InvalidVocabulary(f"{path}: truncated at record {i} of {vocab_size}")
        score, length = struct.unpack_from("<fi", data, offset)
        offset += 8
        if length < 0 or offset + length > len(data):
            raise InvalidVocabulary(
                f"{path}: record {i} declares {length} bytes, {len(data) - offset} remain")
        try:
            piece = data[offset:offset + length].decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidVocabulary(f"{path}: record {i} is not valid UTF-8") from e
        offset += length
        vocab.append(piece)
        scores[i] = score

    if offset < len(data):
        logger.warning(f"{path}: ignoring {len(data) - offset} trailing bytes")
    return vocab, scores


def safe_piece(piece: Optional[str]) -> str:
    """Drop single-character pieces that are control codes, backspace, etc."""
    if not piece:
        return ""
    if len(piece) == 1:
        ch = piece[0]
        if not (32 <= ord(ch) < 127 or ch.isspace()):
            return ""
    return piece


class Tokenizer:
    """Byte Pair Encoding tokenizer that translates strings <-> tokens."""

    def __init__(self, vocab: List[str], scores):
        self.vocab = vocab
        self.vocab_scores = scores
        self.vocab_size = len(vocab)
        self.bos_id = BOS_ID
        self.eos_id = EOS_ID
        self._sorted_vocab = None
        self._lock = threading.Lock()
        logger.info(f"Tokenizer initialized with {self.vocab_size} tokens")

    @property
    def sorted_vocab(self) -> dict:
        """Reverse index piece -> id, built on first use."""
        if self._sorted_vocab is None:
            with self._lock:
                if self._sorted_vocab is None:
                    lookup = {}
                    for i, piece in enumerate(self.vocab):
                        lookup.setdefault(piece, i)
                    self._sorted_vocab = lookup
        return self._sorted_vocab

    def str_lookup(self, piece: str) -> int:
        """Id of an exact vocabulary match, -1 if not found."""
        return self.sorted_vocab.get(piece, -1)

    def merge_step(self, tokens: List[int]) -> bool:
        """
        Merge the best consecutive pair in place.

        The best pair is the one whose concatenation has the highest score;
        on ties the leftmost pair wins. Returns False when nothing merges.
        """
        best_score = -1e10
        best_id = -1
        best_idx = -1
        for i in range(len(tokens) - 1):
            merged = self.str_lookup(self.vocab[tokens[i]] + self.vocab[tokens[i + 1]])
            if merged != -1 and self.vocab_scores[merged] > best_score:
                best_score = self.vocab_scores[merged]
                best_id = merged
                best_idx = i
        if best_idx == -1:
            return False
        tokens[best_idx] = best_id
        del tokens[best_idx + 1]
        return True

    def encode(self, text: str, bos: bool = True, eos: bool = False) -> List[int]:
        """
        Token ids for ``text``, optionally framed by BOS and EOS.

        Each codepoint missing from the vocabulary costs one id per UTF-8
        byte, so up to four for characters outside the BMP. Size output
        buffers from the UTF-8 length of ``text``, not from len(text).
        """
        if text is None:
            raise InvalidInput("cannot encode None text")

        tokens = [self.bos_id] if bos else []
        if text:
            # dummy prefix, added even when text already starts with a space
            dummy_prefix = self.str_lookup(" ")
            if dummy_prefix != -1:
                tokens.append(dummy_prefix)

        # first encode every individual codepoint in the input string
        for ch in text:
            token_id = self.str_lookup(ch)
            if token_id != -1:
                tokens.append(token_id)
                continue
            # byte_fallback encoding: the first 3 vocab elements are <unk>, <s>, </s>
            try:
                raw = ch.encode("utf-8")
            except UnicodeEncodeError as e:
                raise InvalidInput(f"cannot encode codepoint U+{ord(ch):04X} as UTF-8") from e
            for b in raw:
                byte_id = b + BYTE_FALLBACK_OFFSET
                if byte_id >= self.vocab_size:
                    logger.warning(f"No byte token for 0x{b:02X}, using <unk>")
                    byte_id = UNK_ID
                tokens.append(byte_id)

        while self.merge_step(tokens):
            pass

        if eos:
            tokens.append(self.eos_id)
        return tokens

    def decode(self, prev_token: int, token: int) -> str:
        if not 0 <= token < self.vocab_size:
            raise InvalidInput(f"token {token} outside vocabulary of {self.vocab_size}")
        piece = self.vocab[token]
        # following BOS, sentencepiece strips any leading whitespace
        if prev_token == self.bos_id and piece.startswith(" "):
            piece = piece[1:]
        match = BYTE_PIECE.fullmatch(piece)
        if match:
            piece = chr(int(match.group(1), 16))
        return piece


def load_tokenizer(path, vocab_size: int, header: bool = False) -> Tokenizer:
    vocab, scores = load_vocabulary(path, vocab_size, header=header)
    return Tokenizer(vocab, scores)
